"""DuckDB resource store: episodes, sub-resources, approvals and the reverse index.

Write path: every sub-resource write updates its resource row and its reverse
index row in one transaction, so the index never lags the resource.
Read path:  point lookups by id; episodes are loaded with both append-only
histories in insertion order.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import TypeAdapter

from episode_rpc.config import get_settings
from episode_rpc.errors import (
    EpisodeNotFound,
    InvalidDiagnoses,
    InvalidStatusTransition,
    ResourceConflict,
    ResourceNotFound,
)
from episode_rpc.models import (
    EPISODE_STATUS_TRANSITIONS,
    Approval,
    ApprovalStatus,
    Coding,
    Diagnosis,
    DiagnosisRole,
    DiagnosticReport,
    Episode,
    EpisodeStatus,
    Reference,
    ResourceKind,
    ServiceRequest,
)
from .database import Database, from_storage_ts, to_storage_ts, utcnow


logger = logging.getLogger(__name__)

_DIAGNOSES = TypeAdapter(List[Diagnosis])


class IndexEntry(NamedTuple):
    """Reverse index row; ``episode_id`` is None for an unlinked resource."""

    resource_kind: ResourceKind
    resource_id: str
    episode_id: Optional[str]


class ResourceStore:
    """Resource store and reverse index backed by DuckDB."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or Database(get_settings().database_path)
        self._initialize_schema()
        logger.info("ResourceStore initialised")

    @property
    def conn(self):
        return self.db.conn

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _initialize_schema(self):
        stmts = [
            """
            CREATE TABLE IF NOT EXISTS episodes (
                id VARCHAR PRIMARY KEY,
                patient_id VARCHAR NOT NULL,
                name VARCHAR,
                type JSON,
                period_start TIMESTAMP,
                period_end TIMESTAMP,
                managing_organization_type VARCHAR NOT NULL,
                managing_organization_id VARCHAR NOT NULL,
                care_manager JSON,
                status VARCHAR NOT NULL,
                inserted_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS episode_diagnoses (
                episode_id VARCHAR NOT NULL,
                position INTEGER NOT NULL,
                payload JSON NOT NULL,
                appended_at TIMESTAMP NOT NULL,
                PRIMARY KEY (episode_id, position)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS episode_status_history (
                episode_id VARCHAR NOT NULL,
                position INTEGER NOT NULL,
                status VARCHAR NOT NULL,
                changed_at TIMESTAMP NOT NULL,
                reason VARCHAR,
                PRIMARY KEY (episode_id, position)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS sub_resources (
                resource_kind VARCHAR NOT NULL,
                resource_id VARCHAR NOT NULL,
                status VARCHAR,
                payload JSON NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                PRIMARY KEY (resource_kind, resource_id)
            )
            """,
            # one row per existing sub-resource; NULL episode_id = not linked
            """
            CREATE TABLE IF NOT EXISTS episode_reverse_index (
                resource_kind VARCHAR NOT NULL,
                resource_id VARCHAR NOT NULL,
                episode_id VARCHAR,
                updated_at TIMESTAMP NOT NULL,
                PRIMARY KEY (resource_kind, resource_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS approvals (
                id VARCHAR PRIMARY KEY,
                episode_id VARCHAR NOT NULL,
                granted_to_type VARCHAR NOT NULL,
                granted_to_id VARCHAR NOT NULL,
                granted_resources JSON NOT NULL,
                period_start TIMESTAMP NOT NULL,
                period_end TIMESTAMP,
                status VARCHAR NOT NULL,
                reason VARCHAR,
                inserted_at TIMESTAMP NOT NULL,
                status_changed_at TIMESTAMP
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_approvals_episode ON approvals(episode_id, inserted_at)",
        ]
        with self.db.transaction() as conn:
            for s in stmts:
                conn.execute(s.strip())
        logger.info("DuckDB schema ready")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_episode(self, conn, episode_id: str) -> tuple:
        row = conn.execute("SELECT status FROM episodes WHERE id = ?", [episode_id]).fetchone()
        if row is None:
            raise EpisodeNotFound(f"Episode {episode_id} not found")
        return row

    @staticmethod
    def _next_position(conn, table: str, episode_id: str) -> int:
        return conn.execute(
            f"SELECT COALESCE(MAX(position), -1) + 1 FROM {table} WHERE episode_id = ?",
            [episode_id],
        ).fetchone()[0]

    def _load_episode(self, conn, episode_id: str) -> Optional[Episode]:
        row = conn.execute("""
            SELECT id, patient_id, name, type, period_start, period_end,
                   managing_organization_type, managing_organization_id,
                   care_manager, inserted_at, updated_at
            FROM episodes WHERE id = ?
        """, [episode_id]).fetchone()
        if row is None:
            return None
        diagnoses = conn.execute(
            "SELECT payload FROM episode_diagnoses WHERE episode_id = ? ORDER BY position",
            [episode_id],
        ).fetchall()
        history = conn.execute("""
            SELECT status, changed_at, reason FROM episode_status_history
            WHERE episode_id = ? ORDER BY position
        """, [episode_id]).fetchall()
        return Episode(
            id=row[0],
            patient_id=row[1],
            name=row[2],
            type=Coding.model_validate_json(row[3]) if row[3] else None,
            period={"start": from_storage_ts(row[4]), "end": from_storage_ts(row[5])},
            managing_organization=Reference(type=row[6], id=row[7]),
            care_manager=Reference.model_validate_json(row[8]) if row[8] else None,
            diagnoses_history=[Diagnosis.model_validate_json(d[0]) for d in diagnoses],
            status_history=[
                {"status": h[0], "changed_at": from_storage_ts(h[1]), "reason": h[2]}
                for h in history
            ],
            inserted_at=from_storage_ts(row[9]),
            updated_at=from_storage_ts(row[10]),
        )

    @staticmethod
    def _row_to_approval(row: tuple) -> Approval:
        return Approval(
            id=row[0],
            episode=Reference(type="episode_of_care", id=row[1]),
            granted_to=Reference(type=row[2], id=row[3]),
            granted_resources=json.loads(row[4]),
            period={"start": from_storage_ts(row[5]), "end": from_storage_ts(row[6])},
            status=row[7],
            reason=row[8],
            inserted_at=from_storage_ts(row[9]),
        )

    _APPROVAL_COLUMNS = """
        id, episode_id, granted_to_type, granted_to_id, granted_resources,
        period_start, period_end, status, reason, inserted_at
    """

    # ------------------------------------------------------------------
    # Episodes (write path)
    # ------------------------------------------------------------------

    def create_episode(self, episode: Episode) -> Episode:
        """Persist a new episode with its initial histories."""
        now = utcnow()
        with self.db.transaction() as conn:
            if conn.execute("SELECT 1 FROM episodes WHERE id = ?", [episode.id]).fetchone():
                raise ResourceConflict(f"Episode {episode.id} already exists")
            conn.execute("""
                INSERT INTO episodes (
                    id, patient_id, name, type, period_start, period_end,
                    managing_organization_type, managing_organization_id,
                    care_manager, status, inserted_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                episode.id, episode.patient_id, episode.name,
                episode.type.model_dump_json() if episode.type else None,
                to_storage_ts(episode.period.start), to_storage_ts(episode.period.end),
                episode.managing_organization.type, episode.managing_organization.id,
                episode.care_manager.model_dump_json() if episode.care_manager else None,
                episode.status.value,
                to_storage_ts(episode.inserted_at or now), to_storage_ts(now),
            ])
            for position, diagnosis in enumerate(episode.diagnoses_history):
                conn.execute(
                    "INSERT INTO episode_diagnoses VALUES (?, ?, ?, ?)",
                    [episode.id, position, diagnosis.model_dump_json(), to_storage_ts(now)],
                )
            for position, entry in enumerate(episode.status_history):
                conn.execute(
                    "INSERT INTO episode_status_history VALUES (?, ?, ?, ?, ?)",
                    [episode.id, position, entry.status.value,
                     to_storage_ts(entry.changed_at), entry.reason],
                )
            created = self._load_episode(conn, episode.id)
        logger.info("episode_created", extra={"episode_id": episode.id, "patient_id": episode.patient_id})
        return created

    def append_diagnoses(self, episode_id: str, diagnoses: List[Diagnosis]) -> Episode:
        """Append diagnoses to the history; the newest primary becomes active."""
        diagnoses = _DIAGNOSES.validate_python(diagnoses)
        if not diagnoses:
            raise InvalidDiagnoses("At least one diagnosis is required")
        primaries = sum(1 for d in diagnoses if d.role == DiagnosisRole.PRIMARY)
        if primaries > 1:
            raise InvalidDiagnoses("Only one primary diagnosis may be appended at a time")

        now = utcnow()
        with self.db.transaction() as conn:
            self._require_episode(conn, episode_id)
            start = self._next_position(conn, "episode_diagnoses", episode_id)
            for offset, diagnosis in enumerate(diagnoses):
                conn.execute(
                    "INSERT INTO episode_diagnoses VALUES (?, ?, ?, ?)",
                    [episode_id, start + offset, diagnosis.model_dump_json(), to_storage_ts(now)],
                )
            conn.execute("UPDATE episodes SET updated_at = ? WHERE id = ?", [to_storage_ts(now), episode_id])
            episode = self._load_episode(conn, episode_id)
        logger.info("diagnoses_appended", extra={"episode_id": episode_id, "count": len(diagnoses)})
        return episode

    def change_episode_status(
        self,
        episode_id: str,
        status: EpisodeStatus,
        changed_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Episode:
        """Append a status history entry after checking the transition."""
        status = EpisodeStatus(status)
        changed_at = changed_at or utcnow()
        with self.db.transaction() as conn:
            current = EpisodeStatus(self._require_episode(conn, episode_id)[0])
            if status not in EPISODE_STATUS_TRANSITIONS.get(current, set()):
                raise InvalidStatusTransition(
                    f"Episode {episode_id} cannot change from {current.value} to {status.value}"
                )
            position = self._next_position(conn, "episode_status_history", episode_id)
            conn.execute(
                "INSERT INTO episode_status_history VALUES (?, ?, ?, ?, ?)",
                [episode_id, position, status.value, to_storage_ts(changed_at), reason],
            )
            conn.execute(
                "UPDATE episodes SET status = ?, updated_at = ? WHERE id = ?",
                [status.value, to_storage_ts(utcnow()), episode_id],
            )
            episode = self._load_episode(conn, episode_id)
        logger.info("episode_status_changed", extra={
            "episode_id": episode_id, "from": current.value, "to": status.value,
        })
        return episode

    # ------------------------------------------------------------------
    # Episodes (read path)
    # ------------------------------------------------------------------

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        with self.db.transaction() as conn:
            return self._load_episode(conn, episode_id)

    def episode_exists(self, episode_id: str) -> bool:
        return self.db.fetchone("SELECT 1 FROM episodes WHERE id = ?", [episode_id]) is not None

    # ------------------------------------------------------------------
    # Sub-resources and the reverse index
    # ------------------------------------------------------------------

    def put_sub_resource(
        self,
        kind: ResourceKind,
        resource_id: str,
        payload: Dict[str, Any],
        episode_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> IndexEntry:
        """Create or replace a sub-resource and its reverse index entry atomically.

        Passing a different ``episode_id`` re-parents the resource; passing
        None clears the back-reference.
        """
        kind = ResourceKind(kind)
        now = to_storage_ts(utcnow())
        with self.db.transaction() as conn:
            if episode_id is not None:
                self._require_episode(conn, episode_id)
            exists = conn.execute(
                "SELECT 1 FROM sub_resources WHERE resource_kind = ? AND resource_id = ?",
                [kind.value, resource_id],
            ).fetchone()
            if exists:
                conn.execute("""
                    UPDATE sub_resources SET status = ?, payload = ?, updated_at = ?
                    WHERE resource_kind = ? AND resource_id = ?
                """, [status, json.dumps(payload), now, kind.value, resource_id])
                conn.execute("""
                    UPDATE episode_reverse_index SET episode_id = ?, updated_at = ?
                    WHERE resource_kind = ? AND resource_id = ?
                """, [episode_id, now, kind.value, resource_id])
            else:
                conn.execute(
                    "INSERT INTO sub_resources VALUES (?, ?, ?, ?, ?)",
                    [kind.value, resource_id, status, json.dumps(payload), now],
                )
                conn.execute(
                    "INSERT INTO episode_reverse_index VALUES (?, ?, ?, ?)",
                    [kind.value, resource_id, episode_id, now],
                )
        logger.info("sub_resource_written", extra={
            "resource_kind": kind.value, "resource_id": resource_id,
            "episode_id": episode_id, "replaced": bool(exists),
        })
        return IndexEntry(kind, resource_id, episode_id)

    def delete_sub_resource(self, kind: ResourceKind, resource_id: str) -> bool:
        """Remove a sub-resource and its index entry; False if it did not exist."""
        kind = ResourceKind(kind)
        with self.db.transaction() as conn:
            deleted = conn.execute("""
                DELETE FROM sub_resources WHERE resource_kind = ? AND resource_id = ?
                RETURNING resource_id
            """, [kind.value, resource_id]).fetchall()
            conn.execute(
                "DELETE FROM episode_reverse_index WHERE resource_kind = ? AND resource_id = ?",
                [kind.value, resource_id],
            )
        logger.info("sub_resource_deleted", extra={
            "resource_kind": kind.value, "resource_id": resource_id, "existed": bool(deleted),
        })
        return bool(deleted)

    def lookup_episode_id(self, kind: ResourceKind, resource_id: str) -> Optional[IndexEntry]:
        """Reverse index lookup; None means the resource does not exist."""
        kind = ResourceKind(kind)
        row = self.db.fetchone("""
            SELECT episode_id FROM episode_reverse_index
            WHERE resource_kind = ? AND resource_id = ?
        """, [kind.value, resource_id])
        if row is None:
            return None
        return IndexEntry(kind, resource_id, row[0])

    def get_sub_resource(self, kind: ResourceKind, resource_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.fetchone("""
            SELECT payload FROM sub_resources WHERE resource_kind = ? AND resource_id = ?
        """, [ResourceKind(kind).value, resource_id])
        return json.loads(row[0]) if row else None

    def get_index_statistics(self) -> Dict[str, Any]:
        """Linked / unlinked reverse index entries per resource kind."""
        rows = self.db.fetchall("""
            SELECT resource_kind,
                   COUNT(*) FILTER (WHERE episode_id IS NOT NULL),
                   COUNT(*) FILTER (WHERE episode_id IS NULL)
            FROM episode_reverse_index GROUP BY resource_kind
        """)
        return {r[0]: {"linked": r[1], "unlinked": r[2]} for r in rows}

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    def put_diagnostic_report(self, report: DiagnosticReport) -> IndexEntry:
        return self.put_sub_resource(
            ResourceKind.DIAGNOSTIC_REPORT, report.id, report.model_dump(mode="json"),
            episode_id=report.episode.id if report.episode else None, status=report.status,
        )

    def put_service_request(self, request: ServiceRequest) -> IndexEntry:
        return self.put_sub_resource(
            ResourceKind.SERVICE_REQUEST, request.id, request.model_dump(mode="json"),
            episode_id=request.episode.id if request.episode else None, status=request.status,
        )

    def put_encounter(
        self,
        encounter_id: str,
        status: str,
        episode_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> IndexEntry:
        body = {**(payload or {}), "id": encounter_id, "status": status}
        if episode_id:
            body["episode"] = {"type": "episode_of_care", "id": episode_id}
        return self.put_sub_resource(
            ResourceKind.ENCOUNTER, encounter_id, body, episode_id=episode_id, status=status,
        )

    def get_diagnostic_report(self, report_id: str) -> Optional[DiagnosticReport]:
        payload = self.get_sub_resource(ResourceKind.DIAGNOSTIC_REPORT, report_id)
        return DiagnosticReport.model_validate(payload) if payload is not None else None

    def get_service_request(self, request_id: str) -> Optional[ServiceRequest]:
        payload = self.get_sub_resource(ResourceKind.SERVICE_REQUEST, request_id)
        return ServiceRequest.model_validate(payload) if payload is not None else None

    def get_encounter_status(self, encounter_id: str) -> Optional[str]:
        row = self.db.fetchone("""
            SELECT status FROM sub_resources WHERE resource_kind = ? AND resource_id = ?
        """, [ResourceKind.ENCOUNTER.value, encounter_id])
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def create_approval(self, approval: Approval) -> Approval:
        with self.db.transaction() as conn:
            self._require_episode(conn, approval.episode.id)
            if conn.execute("SELECT 1 FROM approvals WHERE id = ?", [approval.id]).fetchone():
                raise ResourceConflict(f"Approval {approval.id} already exists")
            conn.execute(f"""
                INSERT INTO approvals ({self._APPROVAL_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                approval.id, approval.episode.id,
                approval.granted_to.type, approval.granted_to.id,
                json.dumps([k.value for k in approval.granted_resources]),
                to_storage_ts(approval.period.start), to_storage_ts(approval.period.end),
                approval.status.value, approval.reason,
                to_storage_ts(approval.inserted_at or utcnow()),
            ])
            row = conn.execute(
                f"SELECT {self._APPROVAL_COLUMNS} FROM approvals WHERE id = ?", [approval.id]
            ).fetchone()
        logger.info("approval_created", extra={
            "approval_id": approval.id, "episode_id": approval.episode.id,
            "granted_to": approval.granted_to.key,
        })
        return self._row_to_approval(row)

    def revoke_approval(self, approval_id: str) -> Approval:
        """Transition an active approval to revoked."""
        with self.db.transaction() as conn:
            row = conn.execute("SELECT status FROM approvals WHERE id = ?", [approval_id]).fetchone()
            if row is None:
                raise ResourceNotFound(f"Approval {approval_id} not found")
            if row[0] != ApprovalStatus.ACTIVE.value:
                raise InvalidStatusTransition(f"Approval {approval_id} is {row[0]}, cannot revoke")
            conn.execute(
                "UPDATE approvals SET status = ?, status_changed_at = ? WHERE id = ?",
                [ApprovalStatus.REVOKED.value, to_storage_ts(utcnow()), approval_id],
            )
            row = conn.execute(
                f"SELECT {self._APPROVAL_COLUMNS} FROM approvals WHERE id = ?", [approval_id]
            ).fetchone()
        logger.info("approval_revoked", extra={"approval_id": approval_id})
        return self._row_to_approval(row)

    def expire_approvals(self, now: Optional[datetime] = None) -> int:
        """Mark active approvals whose period ended before *now* as expired."""
        now = to_storage_ts(now or utcnow())
        with self.db.transaction() as conn:
            expired = conn.execute("""
                UPDATE approvals SET status = ?, status_changed_at = ?
                WHERE status = ? AND period_end IS NOT NULL AND period_end < ?
                RETURNING id
            """, [ApprovalStatus.EXPIRED.value, now, ApprovalStatus.ACTIVE.value, now]).fetchall()
        if expired:
            logger.info("approvals_expired", extra={"count": len(expired)})
        return len(expired)

    def has_active_approval(
        self,
        episode_id: str,
        grantees: List[Reference],
        now: Optional[datetime] = None,
    ) -> bool:
        """True if any grantee holds an active approval covering *now*."""
        if not grantees:
            return False
        now = to_storage_ts(now or utcnow())
        grantee_sql = " OR ".join("(granted_to_type = ? AND granted_to_id = ?)" for _ in grantees)
        params: List[Any] = [episode_id, ApprovalStatus.ACTIVE.value, now, now]
        for ref in grantees:
            params.extend([ref.type, ref.id])
        row = self.db.fetchone(f"""
            SELECT 1 FROM approvals
            WHERE episode_id = ? AND status = ?
              AND period_start <= ? AND (period_end IS NULL OR period_end >= ?)
              AND ({grantee_sql})
            LIMIT 1
        """, params)
        return row is not None

    def query_approvals(
        self,
        episode_id: str,
        granted_to: Optional[Reference] = None,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        status: Optional[ApprovalStatus] = None,
        after: Optional[tuple] = None,
        limit: int = 20,
    ) -> List[Approval]:
        """Approvals newest first; *after* is the (inserted_at, id) keyset position."""
        params: List[Any] = [episode_id]
        query = f"SELECT {self._APPROVAL_COLUMNS} FROM approvals WHERE episode_id = ?"
        if granted_to is not None:
            query += " AND granted_to_type = ? AND granted_to_id = ?"
            params.extend([granted_to.type, granted_to.id])
        if window_end is not None:
            query += " AND period_start <= ?"
            params.append(to_storage_ts(window_end))
        if window_start is not None:
            query += " AND (period_end IS NULL OR period_end >= ?)"
            params.append(to_storage_ts(window_start))
        if status is not None:
            query += " AND status = ?"
            params.append(ApprovalStatus(status).value)
        if after is not None:
            inserted_at, approval_id = after
            query += " AND (inserted_at < ? OR (inserted_at = ? AND id < ?))"
            params.extend([to_storage_ts(inserted_at), to_storage_ts(inserted_at), approval_id])
        query += " ORDER BY inserted_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_approval(r) for r in self.db.fetchall(query, params)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self):
        self.db.close()
        logger.info("ResourceStore closed")
