import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .db.models import utcnow
from .db.session import make_engine
from .monitoring.dispatcher import CommandDispatcher
from .monitoring.heartbeats import HeartbeatStore
from .monitoring.ledger import CommandLedger
from .monitoring.live import LiveDataFetcher
from .monitoring.orchestrator import LifecycleOrchestrator, Publisher
from .monitoring.poller import CommandPoller
from .monitoring.snapshots import AggregatedSnapshotService
from .monitoring.status import AgentStatusChecker
from .monitoring.transport import AwsControlPlane

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    store: HeartbeatStore
    ledger: CommandLedger
    orchestrator: LifecycleOrchestrator


def build_services(settings: Settings, publish: Optional[Publisher] = None, engine: Optional[Engine] = None) -> Services:
    engine = engine or make_engine(settings.database_url)
    store = HeartbeatStore(engine)
    ledger = CommandLedger(engine)
    transport = AwsControlPlane(settings)
    orchestrator = LifecycleOrchestrator(
        dispatcher=CommandDispatcher(transport, settings, ledger),
        poller=CommandPoller(transport),
        checker=AgentStatusChecker(transport, settings),
        fetcher=LiveDataFetcher(transport, settings),
        snapshots=AggregatedSnapshotService(settings),
        store=store,
        settings=settings,
        ledger=ledger,
        publish=publish,
    )
    return Services(settings=settings, engine=engine, store=store, ledger=ledger, orchestrator=orchestrator)


def prune_once(store: HeartbeatStore, settings: Settings) -> int:
    return store.prune(utcnow() - timedelta(days=settings.heartbeat_retention_days))


async def maintenance_loop(store: HeartbeatStore, settings: Settings) -> None:
    """Prune old heartbeats every ``maintenance_interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(settings.maintenance_interval)
        try:
            await asyncio.to_thread(prune_once, store, settings)
        except SQLAlchemyError:
            logger.exception("Heartbeat pruning failed")
