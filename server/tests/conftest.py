"""Shared fixtures and in-memory doubles for the remote collaborators."""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import pytest

from panel.config import Settings
from panel.core.errors import CommandNotFound, FetchFailed
from panel.db.session import init_db, make_engine
from panel.monitoring.dispatcher import CommandDispatcher
from panel.monitoring.heartbeats import HeartbeatStore
from panel.monitoring.ledger import CommandLedger
from panel.monitoring.orchestrator import LifecycleOrchestrator
from panel.monitoring.poller import CommandPoller
from panel.monitoring.transport import InstanceInfo, Invocation
from panel.monitoring.types import AgentStatus


AGGREGATED_PAYLOAD = {
    "since": "2026-10-18T00:00:00Z",
    "total": 12,
    "stats": {"visitors": 4, "pageviews": 12, "countries": 2, "topBrowser": "Chrome"},
    "aggregations": {
        "byCountry": {"US": 8, "DE": 4},
        "byBrowser": {"Chrome": 9, "Firefox": 3},
        "byPlatform": {"Linux": 12},
    },
    "topPaths": [{"key": "/", "count": 10}],
    "topIPs": [{"key": "198.51.100.7", "count": 6}],
    "topStatus": [{"key": "200", "count": 12}],
}


def make_settings(**overrides: Any) -> Settings:
    values = dict(
        database_url="sqlite://",
        jwt_secret="test-secret",
        ui_user="admin",
        ui_password="s3cret",
        ui_password_hash=None,
        server_psk="test-psk",
        analytics_bucket="test-bucket",
        agent_address_override=None,
        probe_timeout=0.5,
        status_probe_wait=0,
        command_poll_interval=0,
        command_poll_attempts=5,
        status_poll_interval=0,
        status_poll_attempts=3,
        install_grace_period=0,
        start_grace_period=0,
        maintenance_interval=3600,
    )
    values.update(overrides)
    return Settings(**values)


@dataclass
class SentCommand:
    host_id: str
    commands: list[str]
    comment: str
    timeout_seconds: int
    command_id: str


def _next(script: list):
    # the last step repeats forever
    return script.pop(0) if len(script) > 1 else script[0]


class FakeControlPlane:
    """Scripted stand-in for AwsControlPlane.

    ``next_scripts`` holds one invocation script per future command, in
    submission order. Script steps are ``(status, stdout, stderr)`` tuples or
    exceptions to raise.
    """

    def __init__(self):
        self.instances: dict[str, InstanceInfo] = {}
        self.ping: dict[str, Optional[str]] = {}
        self.sent: list[SentCommand] = []
        self.next_scripts: list[list] = []
        self.scripts: dict[str, list] = {}
        self.reads: dict[str, int] = {}
        self.gate: Optional[asyncio.Event] = None

    async def describe_instance(self, instance_id: str) -> InstanceInfo:
        return self.instances.get(
            instance_id,
            InstanceInfo(instance_id=instance_id, exists=True, state="running", public_ip="203.0.113.10"),
        )

    async def ping_status(self, instance_id: str) -> Optional[str]:
        return self.ping.get(instance_id, "Online")

    async def send_command(self, instance_id: str, commands: list[str], comment: str, timeout_seconds: int) -> str:
        await asyncio.sleep(0)
        command_id = f"cmd-{len(self.sent) + 1}"
        self.sent.append(SentCommand(instance_id, list(commands), comment, timeout_seconds, command_id))
        script = self.next_scripts.pop(0) if self.next_scripts else [("Success", "", "")]
        self.scripts[command_id] = list(script)
        return command_id

    async def get_invocation(self, command_id: str, instance_id: str) -> Invocation:
        if self.gate is not None:
            await self.gate.wait()
        script = self.scripts.get(command_id)
        if script is None:
            raise CommandNotFound(f"Command {command_id} not found for {instance_id}")
        self.reads[command_id] = self.reads.get(command_id, 0) + 1
        step = _next(script)
        if isinstance(step, Exception):
            raise step
        status, stdout, stderr = step
        return Invocation(command_id=command_id, instance_id=instance_id, status=status, stdout=stdout, stderr=stderr)

    def actions(self) -> list[str]:
        return [c.comment.split(" ", 1)[0] for c in self.sent]


class FakeChecker:
    """Scripted status probe; steps are ``(installed, running)`` or exceptions."""

    def __init__(self, *steps):
        self.script = list(steps) or [(True, True)]
        self.calls = 0
        self.machine_id = "machine-1"

    async def check_status(self, host_id: str) -> AgentStatus:
        self.calls += 1
        step = _next(self.script)
        if isinstance(step, Exception):
            raise step
        installed, running = step
        return AgentStatus(host_id=host_id, is_installed=installed, is_running=running)

    async def get_machine_id(self, host_id: str) -> str:
        return self.machine_id


class FakeFetcher:
    """Live endpoint double keyed by path without the query string."""

    def __init__(self):
        self.responses: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def fetch_direct(self, host_id: str, endpoint_path: str = "/live/summary") -> Any:
        self.calls.append((host_id, endpoint_path))
        result = self.responses.get(
            endpoint_path.split("?", 1)[0],
            FetchFailed("Request to agent HTTP endpoint timed out"),
        )
        if isinstance(result, Exception):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


class FakeSnapshots:
    def __init__(self, result: Any = None):
        self.result = result
        self.calls: list[tuple] = []

    async def get_aggregated(self, host_id, machine_id, start, end):
        self.calls.append((host_id, machine_id, start, end))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


async def settle(orchestrator: LifecycleOrchestrator) -> None:
    """Wait for every background workflow the orchestrator spawned."""
    while orchestrator._tasks:
        await asyncio.gather(*list(orchestrator._tasks), return_exceptions=True)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine(settings):
    eng = make_engine(settings.database_url)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> HeartbeatStore:
    return HeartbeatStore(engine)


@pytest.fixture
def ledger(engine) -> CommandLedger:
    return CommandLedger(engine)


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def checker() -> FakeChecker:
    return FakeChecker()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def snapshots() -> FakeSnapshots:
    return FakeSnapshots()


@pytest.fixture
def published() -> list[dict]:
    return []


@pytest.fixture
def orchestrator(settings, control_plane, checker, fetcher, snapshots, store, ledger, published):
    async def publish(message: dict) -> None:
        published.append(message)

    return LifecycleOrchestrator(
        dispatcher=CommandDispatcher(control_plane, settings, ledger),
        poller=CommandPoller(control_plane),
        checker=checker,
        fetcher=fetcher,
        snapshots=snapshots,
        store=store,
        settings=settings,
        ledger=ledger,
        publish=publish,
    )
