"""
Engine factory: wires the session engine from Settings.

    BackendApi -> HttpSessionStore (or FileSessionStore)
    Transport  -> CorrelationClient -> BackendGateway
    per operator: SessionManager -> AssetSwapOrchestrator / RegistrationOrchestrator

Usage:
    from swapflow.factory import create_engine, EngineDependencies

    engine = await create_engine(EngineDependencies(cfg=Settings.load(), transport=broker))
    swap = engine.asset_swap()
    await swap.identify_customer("SUB-123", "scan")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from swapflow.config.config import Settings
from swapflow.core.pubsub import Transport
from swapflow.execution.backend_gateway import BackendGateway
from swapflow.execution.correlation import CorrelationClient
from swapflow.execution.idempotency import IdempotencyGuard
from swapflow.infra.backend_api import BackendApi, Credentials
from swapflow.infra.logging_cfg import event_logger
from swapflow.monitoring.metrics_rich import EngineMetrics
from swapflow.orchestrator.asset_swap import AssetSwapOrchestrator
from swapflow.orchestrator.base import OrchestratorConfig
from swapflow.orchestrator.registration import RegistrationOrchestrator
from swapflow.state.session import Actor, ActorRole
from swapflow.state.session_manager import SessionManager, SessionManagerConfig
from swapflow.state.session_store import FileSessionStore, HttpSessionStore, SessionStore

log = logging.getLogger("swapflow")


@dataclass
class EngineDependencies:
    """Everything needed to build an Engine."""
    cfg: Settings
    transport: Transport
    credentials: Optional[Credentials] = None

    # Optional overrides for testing
    api: Optional[BackendApi] = None
    store: Optional[SessionStore] = None
    metrics: Optional[EngineMetrics] = None
    logger: Optional[logging.Logger] = None


@dataclass
class Engine:
    """Shared services; orchestrators are created per operator session."""
    cfg: Settings
    api: BackendApi
    store: SessionStore
    client: CorrelationClient
    gateway: BackendGateway
    metrics: EngineMetrics
    logger: logging.Logger

    def actor(self, role: ActorRole) -> Actor:
        return Actor(
            role=role,
            id=self.cfg.actor_id,
            name=self.cfg.actor_name,
            station=self.cfg.station_id,
            company_id=self.cfg.company_id,
        )

    def _manager(self) -> SessionManager:
        return SessionManager(
            self.store,
            SessionManagerConfig(
                autosave_delay_ms=self.cfg.autosave_delay_ms,
                log_event_callback=event_logger(self.logger, component="session_manager"),
            ),
            metrics=self.metrics,
        )

    def _orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            ttl_hours=self.cfg.session_ttl_hours,
            currency=self.cfg.currency,
            page_limit=self.cfg.sessions_page_limit,
            log_event_callback=event_logger(self.logger, component="orchestrator"),
        )

    def asset_swap(self, actor: Optional[Actor] = None) -> AssetSwapOrchestrator:
        return AssetSwapOrchestrator(
            self._manager(),
            self.store,
            self.gateway,
            actor or self.actor(ActorRole.ATTENDANT),
            self._orchestrator_config(),
            metrics=self.metrics,
        )

    def registration(self, actor: Optional[Actor] = None) -> RegistrationOrchestrator:
        return RegistrationOrchestrator(
            self._manager(),
            self.store,
            self.api,
            self.gateway,
            actor or self.actor(ActorRole.SALESPERSON),
            self._orchestrator_config(),
            metrics=self.metrics,
            vehicle_step=self.cfg.registration_vehicle_step,
        )

    async def close(self) -> None:
        self.client.cancel_all()
        await self.api.close()


def build_store(cfg: Settings, api: BackendApi, logger: logging.Logger) -> SessionStore:
    callback = event_logger(logger, component="session_store")
    if cfg.store_backend == "file":
        return FileSessionStore(cfg.state_dir, log_event=callback)
    return HttpSessionStore(api, log_event=callback)


async def create_engine(deps: EngineDependencies) -> Engine:
    """
    Create the engine with all services wired together.

    Args:
        deps: settings, transport and optional overrides

    Returns:
        Engine ready to hand out orchestrators
    """
    cfg = deps.cfg
    logger = deps.logger or log
    metrics = deps.metrics or EngineMetrics()

    api = deps.api or BackendApi(
        cfg.backend_url,
        deps.credentials or Credentials(token=cfg.api_token),
        timeout=cfg.http_timeout,
    )
    store = deps.store or build_store(cfg, api, logger)

    client = CorrelationClient(
        deps.transport,
        timeout_sec=cfg.correlation_timeout_sec,
        log_event=event_logger(logger, logging.DEBUG, component="correlation"),
        metrics=metrics,
    )
    guard = IdempotencyGuard(
        log_event=event_logger(logger, logging.DEBUG, component="idempotency"),
        metrics=metrics,
    )
    gateway = BackendGateway(
        client,
        guard,
        default_rate=cfg.default_rate,
        currency=cfg.currency,
        payment_method=cfg.payment_method,
        log_event=event_logger(logger, component="gateway"),
        metrics=metrics,
    )

    logger.info(
        "Engine created: store=%s backend=%s station=%s",
        type(store).__name__, cfg.backend_url, cfg.station_id,
    )
    return Engine(
        cfg=cfg,
        api=api,
        store=store,
        client=client,
        gateway=gateway,
        metrics=metrics,
        logger=logger,
    )
