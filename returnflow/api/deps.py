"""Shared workflow instances for the API routers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from returnflow.config import ReturnPolicy, Settings, get_settings
from returnflow.services.notification import NotificationService, build_notification_service
from returnflow.services.otp import OtpGateway
from returnflow.services.pickup import AgentPickups
from returnflow.services.returns import Clock, CustomerReturns
from returnflow.services.review import AdminReturns
from returnflow.services.store import InMemoryStore, ReturnStore
from returnflow.services.warehouse import WarehouseReturns

logger = logging.getLogger(__name__)


@dataclass
class Workflows:
    store: ReturnStore
    policy: ReturnPolicy
    notifier: NotificationService
    otp: OtpGateway
    customer: CustomerReturns
    admin: AdminReturns
    warehouse: WarehouseReturns
    agent: AgentPickups


def build_store(settings: Settings) -> ReturnStore:
    if settings.storage_backend == "sql":
        from returnflow.database import init_db, make_engine, make_session_factory
        from returnflow.services.sql_store import SqlStore

        engine = make_engine(settings.database_url, echo=settings.debug)
        init_db(engine)
        return SqlStore(make_session_factory(engine))
    if settings.storage_backend != "memory":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    return InMemoryStore()


def build_workflows(
    store: Optional[ReturnStore] = None,
    policy: Optional[ReturnPolicy] = None,
    notifier: Optional[NotificationService] = None,
    clock: Optional[Clock] = None,
) -> Workflows:
    settings = get_settings()
    store = store or build_store(settings)
    policy = policy or ReturnPolicy.from_settings(settings)
    notifier = notifier or build_notification_service(settings.notification_webhook_url)
    otp = OtpGateway(policy)
    common = dict(store=store, policy=policy, notifier=notifier, clock=clock)
    logger.info(f"Return workflows ready (storage={type(store).__name__})")
    return Workflows(
        store=store,
        policy=policy,
        notifier=notifier,
        otp=otp,
        customer=CustomerReturns(**common),
        admin=AdminReturns(**common),
        warehouse=WarehouseReturns(**common),
        agent=AgentPickups(otp_gateway=otp, **common),
    )


_workflows: Optional[Workflows] = None


def configure(**kwargs) -> Workflows:
    """Replace the shared workflows (tests use this to inject a store and clock)."""
    global _workflows
    _workflows = build_workflows(**kwargs)
    return _workflows


def get_workflows() -> Workflows:
    global _workflows
    if _workflows is None:
        _workflows = build_workflows()
    return _workflows


T = TypeVar("T")


async def run(call: Callable[..., T], *args, **kwargs) -> T:
    """Run a blocking workflow call on a worker thread, off the event loop."""
    return await asyncio.to_thread(call, *args, **kwargs)


def shutdown() -> None:
    """Flush pending notifications; called when the app stops."""
    if _workflows is not None:
        _workflows.notifier.close()
