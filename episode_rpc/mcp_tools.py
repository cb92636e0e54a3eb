"""FastMCP tools for episode resolution, approvals and number generation."""
import logging
from functools import partialmethod
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError

from episode_rpc.approvals import ApprovalQuery
from episode_rpc.config import Settings, get_settings
from episode_rpc.errors import InvalidRequest, ResourceNotFound, RpcError
from episode_rpc.models import (
    ApprovalFilters,
    ClientContext,
    PageRequest,
    Period,
    Reference,
    RequestValidator,
    ResourceKind,
)
from episode_rpc.numbers import NumberGenerator
from episode_rpc.resolver import EpisodeResolver
from episode_rpc.storage import ResourceStore, SequenceStore


logger = logging.getLogger(__name__)


class EpisodeTools:
    """RPC operations exposed to FastMCP.

    Every operation returns a JSON-ready dict with ``status`` set to
    ``"success"`` or ``"error"``.  Errors carry ``type``, ``message`` and
    ``retryable`` so callers can tell ``NotLinked`` from ``ResourceNotFound``
    and know when a retry is safe.
    """

    def __init__(
        self,
        store: ResourceStore,
        sequences: SequenceStore,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize tools over the resource and sequence stores.

        Args:
            store: ResourceStore holding episodes, sub-resources and approvals
            sequences: SequenceStore backing the number generator
            settings: Optional settings; defaults to the cached environment settings
        """
        self.store = store
        self.sequences = sequences
        self.settings = settings or get_settings()
        self.resolver = EpisodeResolver(store, self.settings)
        self.numbers = NumberGenerator(sequences, self.settings)
        self.approvals = ApprovalQuery(store, self.settings)

    # ------------------------------------------------------------------
    # Episode resolution
    # ------------------------------------------------------------------

    def episode_by_kind_id(
        self,
        kind: ResourceKind,
        client_id: str,
        client_type: str,
        resource_id: str,
        employee_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Resolve a sub-resource id to the episode of care that owns it.

        Args:
            kind: Sub-resource kind the id belongs to
            client_id: Legal entity making the request
            client_type: Client type of that legal entity (e.g. 'MSP', 'NHS')
            resource_id: Sub-resource UUID
            employee_id: Optional employee acting for the legal entity

        Returns:
            Dictionary with 'status' and either 'episode' or 'error'
        """
        def run():
            context = ClientContext(client_id=client_id, client_type=client_type, employee_id=employee_id)
            episode = self.resolver.resolve(context, kind, resource_id)
            return {"episode": self._serialize(episode)}

        return self._call(
            f"episode_by_{ResourceKind(kind).value}_id", run,
            client_id=client_id, resource_id=resource_id,
        )

    episode_by_allergy_intolerance_id = partialmethod(episode_by_kind_id, ResourceKind.ALLERGY_INTOLERANCE)
    episode_by_condition_id = partialmethod(episode_by_kind_id, ResourceKind.CONDITION)
    episode_by_device_id = partialmethod(episode_by_kind_id, ResourceKind.DEVICE)
    episode_by_diagnostic_report_id = partialmethod(episode_by_kind_id, ResourceKind.DIAGNOSTIC_REPORT)
    episode_by_encounter_id = partialmethod(episode_by_kind_id, ResourceKind.ENCOUNTER)
    episode_by_immunization_id = partialmethod(episode_by_kind_id, ResourceKind.IMMUNIZATION)
    episode_by_medication_statement_id = partialmethod(episode_by_kind_id, ResourceKind.MEDICATION_STATEMENT)
    episode_by_observation_id = partialmethod(episode_by_kind_id, ResourceKind.OBSERVATION)
    episode_by_risk_assessment_id = partialmethod(episode_by_kind_id, ResourceKind.RISK_ASSESSMENT)
    episode_by_service_request_id = partialmethod(episode_by_kind_id, ResourceKind.SERVICE_REQUEST)

    def episode_by_id(
        self,
        client_id: str,
        client_type: str,
        episode_id: str,
        employee_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        def run():
            context = ClientContext(client_id=client_id, client_type=client_type, employee_id=employee_id)
            return {"episode": self._serialize(self.resolver.episode_by_id(context, episode_id))}

        return self._call("episode_by_id", run, client_id=client_id, episode_id=episode_id)

    # ------------------------------------------------------------------
    # Plain accessors
    # ------------------------------------------------------------------

    def encounter_status_by_id(self, encounter_id: str) -> Dict[str, Any]:
        def run():
            RequestValidator.validate_resource_id(encounter_id)
            status = self.store.get_encounter_status(encounter_id)
            if status is None:
                raise ResourceNotFound(f"encounter {encounter_id} not found")
            return {"encounter_id": encounter_id, "encounter_status": status}

        return self._call("encounter_status_by_id", run, resource_id=encounter_id)

    def diagnostic_report_by_id(self, report_id: str) -> Dict[str, Any]:
        def run():
            RequestValidator.validate_resource_id(report_id)
            report = self.store.get_diagnostic_report(report_id)
            if report is None:
                raise ResourceNotFound(f"diagnostic_report {report_id} not found")
            return {"diagnostic_report": self._serialize(report)}

        return self._call("diagnostic_report_by_id", run, resource_id=report_id)

    def service_request_by_id(self, request_id: str) -> Dict[str, Any]:
        def run():
            RequestValidator.validate_resource_id(request_id)
            request = self.store.get_service_request(request_id)
            if request is None:
                raise ResourceNotFound(f"service_request {request_id} not found")
            return {"service_request": self._serialize(request)}

        return self._call("service_request_by_id", run, resource_id=request_id)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def approvals_by_episode(
        self,
        client_id: str,
        client_type: str,
        episode_id: str,
        employee_id: Optional[str] = None,
        granted_to_type: Optional[str] = None,
        granted_to_id: Optional[str] = None,
        period_start: Optional[str] = None,
        period_end: Optional[str] = None,
        status: Optional[str] = None,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List approvals for an episode, newest first.

        Args:
            client_id / client_type / employee_id: Requesting client
            episode_id: Episode whose approvals are listed
            granted_to_type, granted_to_id: Only approvals granted to this party
            period_start, period_end: Only approvals whose validity overlaps this window
            status: Only approvals in this status ('active', 'expired', 'revoked')
            page_size: Maximum number of approvals to return
            cursor: 'next_cursor' from a previous page

        Returns:
            Dictionary with 'approvals', 'count' and 'next_cursor'
        """
        def run():
            if bool(granted_to_type) != bool(granted_to_id):
                raise InvalidRequest("granted_to_type and granted_to_id must be given together")
            context = ClientContext(client_id=client_id, client_type=client_type, employee_id=employee_id)
            filters = ApprovalFilters(
                granted_to=(
                    Reference(type=granted_to_type, id=granted_to_id)
                    if granted_to_type and granted_to_id else None
                ),
                period=(
                    Period(start=period_start, end=period_end)
                    if period_start or period_end else None
                ),
                status=status,
            )
            page = self.approvals.list_approvals(
                context, episode_id, filters, PageRequest(size=page_size, cursor=cursor),
            )
            return {
                "episode_id": episode_id,
                "approvals": [self._serialize(a) for a in page.items],
                "count": len(page.items),
                "next_cursor": page.next_cursor,
            }

        return self._call("approvals_by_episode", run, client_id=client_id, episode_id=episode_id)

    # ------------------------------------------------------------------
    # Number generator
    # ------------------------------------------------------------------

    def number(
        self,
        sequence_name: str,
        count: int = 1,
        format_options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Allocate formatted numbers from a named sequence.

        Args:
            sequence_name: Counter name, discriminators folded in (e.g. 'episode-number-2024')
            count: How many numbers to allocate (>= 1)
            format_options: Optional template/width/prefix/suffix/checksum overrides

        Returns:
            Dictionary with 'sequence_name' and the ordered 'numbers'
        """
        def run():
            numbers = self.numbers.allocate(sequence_name, count, format_options)
            return {"sequence_name": sequence_name, "numbers": numbers}

        return self._call("number", run, sequence_name=sequence_name, count=count)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[[], Dict[str, Any]], **log_context) -> Dict[str, Any]:
        try:
            return {"status": "success", **fn()}
        except RpcError as e:
            logger.info(
                f"{operation} failed: {e.error_type}",
                extra={"operation": operation, "error_type": e.error_type, **log_context},
            )
            return self._error(e.error_type, e.message, e.retryable)
        except PydanticValidationError as e:
            return self._error("InvalidRequest", str(e.errors()[0]["msg"]), False)
        except Exception as e:
            logger.exception(
                f"{operation} raised unexpectedly",
                extra={"operation": operation, "error": str(e), **log_context},
            )
            return self._error("InternalError", str(e), False)

    @staticmethod
    def _error(error_type: str, message: str, retryable: bool) -> Dict[str, Any]:
        return {
            "status": "error",
            "error": {"type": error_type, "message": message, "retryable": retryable},
        }

    @staticmethod
    def _serialize(model: BaseModel) -> Dict[str, Any]:
        """JSON-ready dict without empty optional fields."""
        return model.model_dump(mode="json", exclude_none=True)
