"""Approval listing for an episode with overlap filtering and cursor paging."""
import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Optional, Tuple

from episode_rpc.config import Settings, get_settings
from episode_rpc.errors import EpisodeNotFound, InvalidCursor
from episode_rpc.models import (
    Approval,
    ApprovalFilters,
    ApprovalPage,
    ClientContext,
    PageRequest,
    RequestValidator,
)
from episode_rpc.retry import store_retrying
from episode_rpc.storage import ResourceStore
from episode_rpc.visibility import EpisodeVisibility


logger = logging.getLogger(__name__)


def encode_cursor(approval: Approval) -> str:
    """Opaque keyset position of *approval* in the newest-first ordering."""
    raw = json.dumps({"inserted_at": approval.inserted_at.isoformat(), "id": approval.id})
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        return datetime.fromisoformat(data["inserted_at"]), str(data["id"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise InvalidCursor("Malformed page cursor") from exc


class ApprovalQuery:
    """Lists an episode's approvals newest first, one page at a time."""

    def __init__(self, store: ResourceStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.visibility = EpisodeVisibility(store, self.settings)

    def list_approvals(
        self,
        context: ClientContext,
        episode_id: str,
        filters: Optional[ApprovalFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> ApprovalPage:
        RequestValidator.validate_resource_id(episode_id)
        filters = filters or ApprovalFilters()
        page = page or PageRequest()
        size = min(page.size or self.settings.default_page_size, self.settings.max_page_size)
        after = decode_cursor(page.cursor) if page.cursor else None

        retrying = store_retrying(self.settings)
        episode = retrying(self.store.get_episode, episode_id)
        if episode is None:
            raise EpisodeNotFound(f"Episode {episode_id} not found")
        self.visibility.ensure_visible(context, episode)

        window = filters.period
        rows = retrying(
            self.store.query_approvals,
            episode_id,
            granted_to=filters.granted_to,
            window_start=window.start if window else None,
            window_end=window.end if window else None,
            status=filters.status,
            after=after,
            limit=size + 1,
        )
        items = rows[:size]
        next_cursor = encode_cursor(items[-1]) if len(rows) > size else None

        logger.info("approvals_listed", extra={
            "episode_id": episode_id, "client_id": context.client_id,
            "returned": len(items), "has_more": next_cursor is not None,
        })
        return ApprovalPage(items=items, next_cursor=next_cursor)
