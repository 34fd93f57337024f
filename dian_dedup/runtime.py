"""Runtime wiring for CLI and service entrypoints."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from .config import AppConfig, load_config
from .engine import ReconciliationEngine
from .grouper import DuplicateGrouper
from .ledger import LedgerDatabase
from .logging import configure_logging
from .portal import PortalClient
from .service import ReconciliationService
from .session_store import SessionStore


@dataclass(slots=True)
class Runtime:
    config: AppConfig
    ledger: LedgerDatabase
    portal: PortalClient
    session_store: SessionStore
    grouper: DuplicateGrouper
    engine: ReconciliationEngine
    service: ReconciliationService

    def close(self) -> None:
        self.portal.close()
        self.ledger.dispose()


def build_runtime(
    config: AppConfig | None = None,
    transport: httpx.BaseTransport | None = None,
) -> Runtime:
    cfg = config or load_config()
    configure_logging(cfg.log_level, json_output=cfg.log_format == "json")

    ledger = LedgerDatabase(
        cfg.database_url,
        active_state=cfg.active_state,
        inactive_state=cfg.inactive_state,
    )
    portal = PortalClient(
        download_base_url=cfg.download_base_url,
        user_agent=cfg.http_user_agent,
        connect_timeout=cfg.connect_timeout,
        timeout=cfg.http_timeout,
        auth_timeout=cfg.auth_timeout,
        transport=transport,
    )
    session_store = SessionStore(cfg.session_dir, portal)
    grouper = DuplicateGrouper(ledger)
    engine = ReconciliationEngine(session_store, portal, ledger, tolerance=cfg.amount_tolerance)
    service = ReconciliationService(
        grouper=grouper,
        engine=engine,
        session_store=session_store,
        portal=portal,
        auth_base_url=cfg.auth_base_url,
    )

    return Runtime(
        config=cfg,
        ledger=ledger,
        portal=portal,
        session_store=session_store,
        grouper=grouper,
        engine=engine,
        service=service,
    )
