"""
Entry point: validate configuration and list the sessions that can be resumed.

The bus transport is supplied by the host application (see factory.create_engine);
this command only needs the session store.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from swapflow.config.config import Settings
from swapflow.config.config_validator import validate_and_log
from swapflow.factory import build_store
from swapflow.infra.backend_api import BackendApi, Credentials
from swapflow.infra.logging_cfg import build_logger, log_event
from swapflow.monitoring.metrics_rich import EngineMetrics, start_metrics_server
from swapflow.state.session import WorkflowType
from swapflow.state.session_store import STATUS_ACTIVE, SessionFilter, SessionStoreError


async def list_open_sessions(cfg: Settings, logger: logging.Logger) -> int:
    """Log one line per open session. Returns how many were found."""
    api = BackendApi(cfg.backend_url, Credentials(token=cfg.api_token), timeout=cfg.http_timeout)
    store = build_store(cfg, api, logger)
    found = 0
    try:
        for workflow in WorkflowType:
            page = await store.list(SessionFilter(
                workflow_type=workflow,
                status=STATUS_ACTIVE,
                limit=cfg.sessions_page_limit,
            ))
            for summary in page.sessions:
                log_event(logger, "open_session", **summary.to_dict())
            found += len(page.sessions)
            if page.has_next_page:
                log_event(logger, "open_sessions_truncated", workflow=workflow.value, total=page.total)
    finally:
        await api.close()
    return found


async def main() -> None:
    cfg = Settings.load()
    logger = build_logger("swapflow", level=getattr(logging, cfg.log_level.upper(), logging.INFO),
                          file_path=cfg.log_file)

    if not validate_and_log(cfg, logger):
        logger.error("Configuration validation failed, exiting")
        sys.exit(1)

    if cfg.metrics_port:
        start_metrics_server(EngineMetrics(), cfg.metrics_port)

    try:
        found = await list_open_sessions(cfg, logger)
    except SessionStoreError as e:
        logger.error(f"Could not list sessions: {e}")
        sys.exit(2)
    log_event(logger, "open_sessions_listed", count=found)


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)


if __name__ == "__main__":
    cli()
