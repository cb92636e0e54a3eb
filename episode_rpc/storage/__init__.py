"""DuckDB persistence for episodes, the reverse index, approvals and sequences."""
from .database import Database
from .duckdb_store import IndexEntry, ResourceStore
from .expiry_worker import ApprovalExpiryWorker
from .sequence_store import SequenceStore

__all__ = ["Database", "IndexEntry", "ResourceStore", "ApprovalExpiryWorker", "SequenceStore"]
