"""FastMCP server bootstrap for the fleet scheduler."""

import json
import logging
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .assessment import AssessmentEngine
from .assessment.engine import Notifier
from .backends import build_adapters
from .config import FleetSettings, get_settings
from .pool import SessionPool
from .profiles import ProfileLoadError, ProfileLoader
from .storage import ChromaJournal, ChromaUnavailableError
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the scheduler server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _open_journal(settings: FleetSettings) -> tuple[ChromaJournal | None, dict[str, Any]]:
    metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "fleet_journal",
        "error": None,
    }
    try:
        journal = ChromaJournal(settings.chroma_persist_path)
        journal.ping()
    except ChromaUnavailableError as exc:
        metadata["error"] = str(exc)
        return None, metadata
    metadata["available"] = True
    return journal, metadata


def create_server(
    settings: Optional[FleetSettings] = None,
    pool: SessionPool | None = None,
    engine: AssessmentEngine | None = None,
    *,
    journal: ChromaJournal | None = None,
    notifier: Notifier | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the scheduler's tools and status resource."""

    settings = settings or get_settings()
    profile_loader = ProfileLoader(settings.profile_paths)

    profile_error: str | None = None
    try:
        profiles = profile_loader.load_all()
    except ProfileLoadError as exc:
        logger.warning("Ignoring invalid backend profiles", extra={"error": str(exc)})
        profiles = {}
        profile_error = str(exc)

    if journal is not None:
        journal_metadata: dict[str, Any] = {"available": True, "path": None, "collection": None, "error": None}
    elif pool is None and engine is None:
        journal, journal_metadata = _open_journal(settings)
    else:
        journal_metadata = {"available": False, "path": None, "collection": None, "error": "not configured"}

    if pool is None:
        adapters = build_adapters(
            settings.backend_chain,
            profiles,
            suppress_node_warnings=settings.suppress_node_warnings,
        )
        if not adapters:
            logger.warning(
                "No backend CLI is available; session calls will fail",
                extra={"chain": list(settings.backend_chain)},
            )
        pool = SessionPool.from_settings(settings, adapters, journal=journal)

    if engine is None:
        engine = AssessmentEngine.from_settings(settings, notifier=notifier, journal=journal)

    server = FastMCP(
        name="Fleet Scheduler",
        version=__version__,
        instructions=(
            "The fleet scheduler runs coding-agent sessions across interchangeable backends "
            "and decides what should happen next to each task. Use assess_task for lifecycle "
            "decisions and launch_or_resume to drive a task's agent session."
        ),
    )

    handles = register_tools(
        server,
        pool=pool,
        engine=engine,
        settings=settings,
        journal=journal,
    )

    @server.resource(
        "resource://fleet/status",
        name="fleet_status",
        title="Fleet Scheduler Status",
        description="Provides backend, cooldown, and session summary for the fleet scheduler.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        payload = {
            "version": __version__,
            "profiles": sorted(profiles),
            "profile_error": profile_error,
            "pool": pool.status(),
            "assessment": engine.status(),
            "journal": journal_metadata,
            "registry_path": str(settings.registry_path),
        }
        return json.dumps(payload, indent=2)

    setattr(server, "session_pool", pool)
    setattr(server, "assessment_engine", engine)
    setattr(server, "journal", journal)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the scheduler MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    pool: SessionPool = getattr(server, "session_pool")
    logger.info(
        "Launching fleet scheduler MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "backends": sorted(pool.adapters),
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
