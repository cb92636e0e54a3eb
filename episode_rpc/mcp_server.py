"""FastMCP server adapter for the episode RPC tools.

API notes (mcp>=1.0.0 / FastMCP):
- Tools are registered via the @app.tool() decorator or app.add_tool(fn, name=...).
- app._tool_manager._tools is a dict[str, Tool] of registered tools.
- app.run() is the synchronous stdio transport entry-point used by mcp dev.
"""
import logging
from typing import Optional

from mcp.server.fastmcp import FastMCP

from episode_rpc.config import Settings, get_settings
from episode_rpc.mcp_tools import EpisodeTools
from episode_rpc.models import ResourceKind
from episode_rpc.storage import ApprovalExpiryWorker, Database, ResourceStore, SequenceStore

logger = logging.getLogger(__name__)


def _episode_by_kind_tool(tools: EpisodeTools, kind: ResourceKind):
    def episode_by_kind(
        client_id: str,
        client_type: str,
        resource_id: str,
        employee_id: Optional[str] = None,
    ) -> dict:
        return tools.episode_by_kind_id(
            kind,
            client_id=client_id,
            client_type=client_type,
            resource_id=resource_id,
            employee_id=employee_id,
        )

    return episode_by_kind


def create_mcp_server(
    store: Optional[ResourceStore] = None,
    sequences: Optional[SequenceStore] = None,
    settings: Optional[Settings] = None,
) -> tuple[FastMCP, EpisodeTools]:
    """Factory: build and wire a FastMCP app with the episode RPC tools.

    Args:
        store: Optional pre-existing ResourceStore.
        sequences: Optional pre-existing SequenceStore.
        settings: Optional settings; defaults to the environment.

    When neither store is given both are created on one shared database.

    Returns:
        Tuple of (FastMCP app, EpisodeTools).  The tools object exposes the
        stores so callers can pre-populate data or run assertions.
    """
    settings = settings or get_settings()
    if store is None and sequences is None:
        database = Database(settings.database_path)
        store = ResourceStore(database)
        sequences = SequenceStore(database, settings.sequence_initial_value)
    elif store is None:
        store = ResourceStore(sequences.db)
    elif sequences is None:
        sequences = SequenceStore(store.db, settings.sequence_initial_value)

    tools = EpisodeTools(store, sequences, settings)

    app = FastMCP(settings.server_name)

    # ------------------------------------------------------------------ #
    # One resolver tool per sub-resource kind                              #
    # ------------------------------------------------------------------ #
    for kind in ResourceKind:
        app.add_tool(
            _episode_by_kind_tool(tools, kind),
            name=f"episode_by_{kind.value}_id",
            description=(
                f"Resolve a {kind.value} id to the episode of care that owns it. "
                "Errors distinguish ResourceNotFound from NotLinked."
            ),
        )

    @app.tool()
    def episode_by_id(
        client_id: str,
        client_type: str,
        episode_id: str,
        employee_id: Optional[str] = None,
    ) -> dict:
        """Fetch an episode of care with its diagnoses and status history."""
        return tools.episode_by_id(
            client_id=client_id, client_type=client_type,
            episode_id=episode_id, employee_id=employee_id,
        )

    # ------------------------------------------------------------------ #
    # Plain accessors                                                      #
    # ------------------------------------------------------------------ #
    @app.tool()
    def encounter_status_by_id(encounter_id: str) -> dict:
        """Return the status of an encounter."""
        return tools.encounter_status_by_id(encounter_id)

    @app.tool()
    def diagnostic_report_by_id(report_id: str) -> dict:
        """Return a diagnostic report by its own id."""
        return tools.diagnostic_report_by_id(report_id)

    @app.tool()
    def service_request_by_id(request_id: str) -> dict:
        """Return a service request by its own id."""
        return tools.service_request_by_id(request_id)

    # ------------------------------------------------------------------ #
    # Approvals                                                            #
    # ------------------------------------------------------------------ #
    @app.tool()
    def approvals_by_episode(
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
    ) -> dict:
        """List approvals for an episode, newest first, with cursor paging.

        The period filter keeps approvals whose validity overlaps the window.
        """
        return tools.approvals_by_episode(
            client_id=client_id, client_type=client_type, episode_id=episode_id,
            employee_id=employee_id, granted_to_type=granted_to_type,
            granted_to_id=granted_to_id, period_start=period_start,
            period_end=period_end, status=status, page_size=page_size, cursor=cursor,
        )

    # ------------------------------------------------------------------ #
    # Number generator                                                     #
    # ------------------------------------------------------------------ #
    @app.tool()
    def number(
        sequence_name: str,
        count: int = 1,
        format_options: Optional[dict] = None,
    ) -> dict:
        """Allocate unique, increasing, formatted numbers from a named sequence.

        format_options keys: template ('EP-%06d'), width, prefix, suffix,
        checksum ('luhn' or 'mod11').
        """
        return tools.number(sequence_name=sequence_name, count=count, format_options=format_options)

    logger.info(
        "MCP server created",
        extra={"tools": list(app._tool_manager._tools.keys())},
    )

    return app, tools


# Module-level app instance, used by `mcp dev` / inspector and for direct imports.
app, _default_tools = create_mcp_server()


def run_server() -> None:
    """Entry-point for the `episode-rpc` CLI script.

    Runs the approval expiry sweeper alongside the stdio server.
    """
    settings = get_settings()
    worker = ApprovalExpiryWorker(
        _default_tools.store.expire_approvals,
        interval=settings.approval_expiry_interval,
    )
    worker.start()
    try:
        app.run()
    finally:
        worker.stop()


if __name__ == "__main__":
    run_server()
