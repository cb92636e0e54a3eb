"""Resolve any sub-resource id to the episode that owns it.

Every ``episode_by_<kind>_id`` operation goes through ``EpisodeResolver.resolve``
with a ``ResourceKind`` tag, so validation, the reverse index lookup, the
episode load and visibility scoping happen in exactly one place:

1. the id must be a canonical UUID (``InvalidIdentifier``);
2. the reverse index decides between ``ResourceNotFound`` (no such resource),
   ``NotLinked`` (resource without back-reference) and an episode id;
3. the episode is loaded with both histories (``EpisodeNotFound`` if the
   index points nowhere);
4. the caller must be allowed to see it (``Forbidden``).

Reads that hit ``StoreUnavailable`` are retried with bounded backoff.
"""
import logging
from typing import Optional

from episode_rpc.config import Settings, get_settings
from episode_rpc.errors import EpisodeNotFound, NotLinked, ResourceNotFound
from episode_rpc.models import ClientContext, Episode, RequestValidator, ResourceKind
from episode_rpc.retry import store_retrying
from episode_rpc.storage import ResourceStore
from episode_rpc.visibility import EpisodeVisibility


logger = logging.getLogger(__name__)


class EpisodeResolver:
    """Read-only reverse lookup from sub-resources to their owning episode."""

    def __init__(self, store: ResourceStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.visibility = EpisodeVisibility(store, self.settings)

    def resolve(self, context: ClientContext, kind: ResourceKind, resource_id: str) -> Episode:
        """Return the episode owning ``(kind, resource_id)``."""
        kind = ResourceKind(kind)
        RequestValidator.validate_resource_id(resource_id)

        entry = store_retrying(self.settings)(self.store.lookup_episode_id, kind, resource_id)
        if entry is None:
            raise ResourceNotFound(f"{kind.value} {resource_id} not found")
        if entry.episode_id is None:
            raise NotLinked(f"{kind.value} {resource_id} is not linked to an episode")

        episode = self._load(entry.episode_id)
        self.visibility.ensure_visible(context, episode)
        logger.info("episode_resolved", extra={
            "resource_kind": kind.value, "resource_id": resource_id,
            "episode_id": episode.id, "client_id": context.client_id,
        })
        return episode

    def episode_by_id(self, context: ClientContext, episode_id: str) -> Episode:
        RequestValidator.validate_resource_id(episode_id)
        episode = self._load(episode_id)
        self.visibility.ensure_visible(context, episode)
        return episode

    def _load(self, episode_id: str) -> Episode:
        episode = store_retrying(self.settings)(self.store.get_episode, episode_id)
        if episode is None:
            raise EpisodeNotFound(f"Episode {episode_id} not found")
        return episode
