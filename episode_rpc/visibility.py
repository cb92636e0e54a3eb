"""Which clients may see an episode."""
import logging
from datetime import datetime
from typing import Optional

from episode_rpc.config import Settings, get_settings
from episode_rpc.errors import Forbidden
from episode_rpc.models import ClientContext, Episode
from episode_rpc.retry import store_retrying
from episode_rpc.storage import ResourceStore


logger = logging.getLogger(__name__)


class EpisodeVisibility:
    """A client sees an episode when it is privileged, manages the episode,
    or holds an active approval for it (as legal entity or as employee).
    """

    def __init__(self, store: ResourceStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.privileged_client_types = frozenset(self.settings.privileged_client_types)

    def is_visible(self, context: ClientContext, episode: Episode, now: Optional[datetime] = None) -> bool:
        if context.client_type in self.privileged_client_types:
            return True
        if episode.managing_organization.id == context.client_id:
            return True
        return store_retrying(self.settings)(
            self.store.has_active_approval, episode.id, context.grantees(), now,
        )

    def ensure_visible(self, context: ClientContext, episode: Episode) -> None:
        if not self.is_visible(context, episode):
            logger.warning("episode_access_denied", extra={
                "episode_id": episode.id, "client_id": context.client_id,
                "client_type": context.client_type,
            })
            raise Forbidden()
