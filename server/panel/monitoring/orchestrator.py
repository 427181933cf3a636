"""
Agent lifecycle orchestrator.

Sequences the lifecycle of the monitoring agent on one host::

    Unknown -> NotInstalled -> Installing -> InstalledNotRunning -> Running
                               Installing / InstalledNotRunning -> Failed

and answers analytics reads through the fallback chain: live fetch, then a
status probe to classify the failure, then the aggregated snapshot in object
storage.

Each install runs as one background :class:`Workflow` owned by the
orchestrator. A per-host lock plus the in-flight workflow record guarantee that
a host never has two install commands outstanding; later callers join the
existing workflow and see its command id.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from ..config import Settings
from ..core.errors import AnalyticsError, FetchFailed, InvalidParameters, PanelError
from ..db.models import as_utc, utcnow
from ..schemas.protocol import HeartbeatOut, MetricsSummary
from .analytics import AnalyticsSnapshot, decode_snapshot
from .dispatcher import CommandDispatcher
from .heartbeats import HeartbeatStore
from .ledger import CommandLedger
from .live import LiveDataFetcher
from .poller import CommandPoller, PollBudget, PollOutcome, pause, wait_for_command
from .snapshots import AggregatedSnapshotService
from .status import AgentStatusChecker
from .types import (
    AgentAction,
    AgentStatus,
    CommandAccepted,
    CommandStatus,
    LifecycleReport,
    LifecycleState,
    ProgressUpdate,
    RemoteCommand,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class Workflow:
    """Handle for one background install; cancelled on completion or shutdown."""

    host_id: str
    command_id: str
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task[LifecycleReport]"] = None


class LifecycleOrchestrator:
    def __init__(
        self,
        dispatcher: CommandDispatcher,
        poller: CommandPoller,
        checker: AgentStatusChecker,
        fetcher: LiveDataFetcher,
        snapshots: AggregatedSnapshotService,
        store: HeartbeatStore,
        settings: Settings,
        ledger: Optional[CommandLedger] = None,
        publish: Optional[Publisher] = None,
    ):
        self.dispatcher = dispatcher
        self.poller = poller
        self.checker = checker
        self.fetcher = fetcher
        self.snapshots = snapshots
        self.store = store
        self.settings = settings
        self.ledger = ledger
        self.publish = publish

        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._installs: dict[str, Workflow] = {}
        self._status_cache: dict[str, AgentStatus] = {}
        self._progress: dict[str, ProgressUpdate] = {}
        self._tasks: set[asyncio.Task] = set()

    # ---------- agent status ----------

    def _annotate(self, status: AgentStatus) -> AgentStatus:
        flight = self._installs.get(status.host_id)
        if flight is None:
            return status
        return status.model_copy(update={
            "installation_in_progress": True,
            "installation_command_id": flight.command_id,
        })

    async def check_agent_status(self, host_id: str) -> AgentStatus:
        status = await self.checker.check_status(host_id)
        # cached raw; the in-flight install is applied on every read
        self._status_cache[host_id] = status
        return self._annotate(status)

    def cached_status(self, host_id: str) -> Optional[AgentStatus]:
        status = self._status_cache.get(host_id)
        return self._annotate(status) if status is not None else None

    def get_progress(self, host_id: str) -> Optional[ProgressUpdate]:
        return self._progress.get(host_id)

    async def _publish(self, host_id: str, state: LifecycleState, message: str, command_id: Optional[str] = None) -> None:
        update = ProgressUpdate(
            host_id=host_id,
            state=state,
            message=message,
            command_id=command_id,
            updated_at=utcnow(),
        )
        self._progress[host_id] = update
        if self.publish is not None:
            await self.publish({"type": "agent_progress", **update.model_dump(by_alias=True, mode="json")})

    def _command_progress(self, host_id: str, state: LifecycleState, command_id: str):
        async def report(status: CommandStatus) -> None:
            message = status.last_output_line or f"Command {status.state.value}"
            await self._publish(host_id, state, message, command_id)
        return report

    # ---------- commands ----------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _command_budget(self) -> PollBudget:
        return PollBudget(
            self.settings.command_poll_attempts,
            self.settings.command_poll_interval,
            deadline=self.settings.command_poll_deadline,
        )

    async def _begin_install(self, host_id: str) -> tuple[Workflow, bool]:
        async with self._locks[host_id]:
            flight = self._installs.get(host_id)
            if flight is not None:
                logger.info("Install already in flight on %s (command %s)", host_id, flight.command_id)
                return flight, True
            command = await self.dispatcher.dispatch(host_id, AgentAction.INSTALL)
            # published before the workflow exists so its updates always come later
            await self._publish(host_id, LifecycleState.INSTALLING, "Installation started", command.command_id)
            flight = Workflow(host_id=host_id, command_id=command.command_id)
            self._installs[host_id] = flight
            flight.task = self._spawn(self._run_install(flight))
        return flight, False

    async def install_agent(self, host_id: str) -> CommandAccepted:
        flight, deduplicated = await self._begin_install(host_id)
        return CommandAccepted(command_id=flight.command_id, deduplicated=deduplicated)

    async def _dispatch(self, host_id: str, action: AgentAction) -> CommandAccepted:
        command = await self.dispatcher.dispatch(host_id, action)
        self._status_cache.pop(host_id, None)
        return CommandAccepted(command_id=command.command_id)

    async def uninstall_agent(self, host_id: str) -> CommandAccepted:
        return await self._dispatch(host_id, AgentAction.UNINSTALL)

    async def start_agent(self, host_id: str) -> CommandAccepted:
        return await self._dispatch(host_id, AgentAction.START)

    async def stop_agent(self, host_id: str) -> CommandAccepted:
        return await self._dispatch(host_id, AgentAction.STOP)

    async def poll_command(self, command_id: str, host_id: str) -> CommandStatus:
        return await self.poller.poll(command_id, host_id)

    def list_commands(self, host_id: str, limit: int = 50) -> list[RemoteCommand]:
        if self.ledger is None:
            return []
        return self.ledger.list(host_id, limit=limit)

    async def get_machine_id(self, host_id: str) -> str:
        return await self.checker.get_machine_id(host_id)

    # ---------- lifecycle state machine ----------

    def _cancelled(self, host_id: str, command_id: Optional[str]) -> LifecycleReport:
        cached = self._status_cache.get(host_id)
        state = cached.lifecycle_state if cached else LifecycleState.UNKNOWN
        return LifecycleReport(host_id=host_id, state=state, message="Cancelled", command_id=command_id)

    async def _final_check(self, host_id: str, command_id: str, outcome: PollOutcome, failure: str) -> LifecycleReport:
        """One corrective status check after a command ends.

        A command can report Failed while the agent did come up, so a running
        agent wins over the command's verdict.
        """
        output = outcome.status.output if outcome.status else None
        error = outcome.status.error_text if outcome.status else outcome.last_error
        try:
            status = await self.check_agent_status(host_id)
        except PanelError as exc:
            logger.warning("Final status check on %s failed: %s", host_id, exc.message)
            status = None
        if status is not None and status.is_running:
            if not outcome.succeeded:
                logger.info("Command %s on %s ended %s but the agent is running",
                            command_id, host_id, outcome.state.value if outcome.state else "without status")
            return LifecycleReport(host_id=host_id, state=LifecycleState.RUNNING, message="Agent is running",
                                   command_id=command_id, output=output, error=error)
        last_line = outcome.status.last_output_line if outcome.status else None
        message = f"{failure}: {last_line}" if last_line else failure
        return LifecycleReport(host_id=host_id, state=LifecycleState.FAILED, message=message,
                               command_id=command_id, output=output, error=error)

    def _failure_text(self, action: str, outcome: PollOutcome) -> str:
        if outcome.timed_out:
            return f"{action} did not complete in time"
        return f"{action} {outcome.state.value if outcome.state else 'failed'}"

    async def _run_install(self, flight: Workflow) -> LifecycleReport:
        host_id, command_id = flight.host_id, flight.command_id
        try:
            outcome = await wait_for_command(
                self.poller, command_id, host_id, self._command_budget(),
                on_progress=self._command_progress(host_id, LifecycleState.INSTALLING, command_id),
                cancel=flight.cancel,
            )
            if outcome.cancelled:
                report = self._cancelled(host_id, command_id)
            elif outcome.succeeded:
                await self._publish(host_id, LifecycleState.INSTALLED_NOT_RUNNING,
                                    "Agent installed. Waiting for it to start...", command_id)
                if await pause(self.settings.install_grace_period, flight.cancel):
                    report = self._cancelled(host_id, command_id)
                else:
                    report = await self._bring_up(host_id, flight.cancel, command_id)
            else:
                report = await self._final_check(host_id, command_id, outcome, self._failure_text("Installation", outcome))
        except PanelError as exc:
            logger.error("Install workflow on %s failed: %s", host_id, exc.message)
            report = LifecycleReport(host_id=host_id, state=LifecycleState.FAILED, message=exc.message,
                                     command_id=command_id, error=exc.message)
        finally:
            if self._installs.get(host_id) is flight:
                del self._installs[host_id]
        await self._publish(host_id, report.state, report.message, report.command_id)
        logger.info("Install workflow on %s finished: %s", host_id, report.state.value)
        return report

    async def _bring_up(self, host_id: str, cancel: Optional[asyncio.Event], command_id: Optional[str] = None) -> LifecycleReport:
        """Wait for an installed agent to run; start it if it does not on its own."""
        attempts = self.settings.status_poll_attempts
        last_error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            try:
                status = await self.check_agent_status(host_id)
            except PanelError as exc:
                last_error = exc.message
                logger.warning("Status check on %s failed (attempt %d/%d): %s", host_id, attempt, attempts, exc.message)
            else:
                last_error = None
                if status.is_running:
                    return LifecycleReport(host_id=host_id, state=LifecycleState.RUNNING,
                                           message="Agent is running", command_id=command_id)
                await self._publish(host_id, LifecycleState.INSTALLED_NOT_RUNNING,
                                    f"Waiting for agent to start ({attempt}/{attempts})", command_id)
            if attempt < attempts and await pause(self.settings.status_poll_interval, cancel):
                return self._cancelled(host_id, command_id)

        if last_error is not None:
            # an unreachable host will not take a Start command either
            return LifecycleReport(host_id=host_id, state=LifecycleState.FAILED,
                                   message=f"Agent did not become ready in time: {last_error}",
                                   command_id=command_id, error=last_error)
        return await self._escalate_start(host_id, cancel)

    async def _escalate_start(self, host_id: str, cancel: Optional[asyncio.Event]) -> LifecycleReport:
        await self._publish(host_id, LifecycleState.INSTALLED_NOT_RUNNING, "Agent is not running. Starting it...")
        command = await self.dispatcher.dispatch(host_id, AgentAction.START)
        outcome = await wait_for_command(
            self.poller, command.command_id, host_id, self._command_budget(),
            on_progress=self._command_progress(host_id, LifecycleState.INSTALLED_NOT_RUNNING, command.command_id),
            cancel=cancel,
        )
        if outcome.cancelled:
            return self._cancelled(host_id, command.command_id)
        if outcome.succeeded:
            if await pause(self.settings.start_grace_period, cancel):
                return self._cancelled(host_id, command.command_id)
            failure = "Agent was started but is not running"
        else:
            failure = self._failure_text("Start", outcome)
        return await self._final_check(host_id, command.command_id, outcome, failure)

    async def _join(self, flight: Workflow, cancel: Optional[asyncio.Event]) -> LifecycleReport:
        # shield: a caller giving up must not kill the shared install
        task = asyncio.shield(flight.task)
        if cancel is None:
            return await task
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        return self._cancelled(flight.host_id, flight.command_id)

    async def ensure_running(self, host_id: str, cancel: Optional[asyncio.Event] = None) -> LifecycleReport:
        """Drive the host to Running (or Failed) and report where it ended up."""
        try:
            flight = self._installs.get(host_id)
            if flight is not None:
                return await self._join(flight, cancel)
            status = await self.check_agent_status(host_id)
            flight = self._installs.get(host_id)
            if flight is not None and not status.is_running:
                return await self._join(flight, cancel)
            if status.is_running:
                report = LifecycleReport(host_id=host_id, state=LifecycleState.RUNNING, message="Agent is running")
            elif not status.is_installed:
                flight, _ = await self._begin_install(host_id)
                return await self._join(flight, cancel)
            else:
                report = await self._bring_up(host_id, cancel)
        except PanelError as exc:
            logger.error("ensure_running on %s failed: %s", host_id, exc.message)
            report = LifecycleReport(host_id=host_id, state=LifecycleState.FAILED, message=exc.message, error=exc.message)
        await self._publish(host_id, report.state, report.message, report.command_id)
        return report

    def schedule_ensure_running(self, host_id: str) -> None:
        self._spawn(self.ensure_running(host_id))

    # ---------- data retrieval ----------

    async def get_analytics(self, host_id: str) -> AnalyticsSnapshot:
        try:
            payload = await self.fetcher.fetch_direct(host_id, "/live/summary")
            if payload:
                return decode_snapshot(host_id, payload)
        except FetchFailed as exc:
            return await self._analytics_fallback(host_id, exc)
        raise AnalyticsError("DATA_UNAVAILABLE", 502, "Agent returned no analytics data")

    async def _analytics_fallback(self, host_id: str, fetch_error: FetchFailed) -> AnalyticsSnapshot:
        logger.warning("Live analytics fetch for %s failed: %s", host_id, fetch_error.message)
        try:
            status = await self.check_agent_status(host_id)
        except PanelError as exc:
            logger.error("Status check for %s after failed fetch also failed: %s", host_id, exc.message)
            raise AnalyticsError("FETCH_FAILED", 502, fetch_error.message) from fetch_error

        if not status.is_installed:
            try:
                accepted = await self.install_agent(host_id)
            except PanelError as exc:
                logger.error("Could not start agent install on %s: %s", host_id, exc.message)
                raise AnalyticsError("FETCH_FAILED", 502, fetch_error.message) from fetch_error
            raise AnalyticsError(
                "AGENT_INSTALLING", 202,
                "Monitoring agent is being installed. Please retry shortly.",
                commandId=accepted.command_id,
                status=accepted.status,
            )
        if not status.is_running:
            raise AnalyticsError(
                "AGENT_NOT_RUNNING", 503,
                "Monitoring agent is installed but not running. Start the agent and try again.",
            )

        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=self.settings.analytics_window_hours)
        try:
            machine_id = await self.get_machine_id(host_id)
            return await self.snapshots.get_aggregated(host_id, machine_id, start, end)
        except PanelError as exc:
            logger.error("Aggregated fallback for %s failed: %s", host_id, exc.message)
            raise AnalyticsError("FETCH_FAILED", 502, fetch_error.message, fallback="DATA_UNAVAILABLE") from fetch_error

    async def get_system_metrics(self, host_id: str, top_n: int = 20) -> Any:
        if not 1 <= top_n <= 100:
            raise InvalidParameters("top must be between 1 and 100")
        try:
            return await self.fetcher.fetch_direct(host_id, f"/system?top={top_n}")
        except FetchFailed as exc:
            raise AnalyticsError("FETCH_ERROR", 500, exc.message) from exc

    # ---------- heartbeats ----------

    async def record_heartbeat(self, host_id: str, payload: Any) -> HeartbeatOut:
        record = self.store.record_heartbeat(host_id, payload)
        if self.publish is not None:
            await self.publish({"type": "heartbeat", **record.model_dump(by_alias=True, mode="json")})
        return record

    def get_latest_heartbeat(self, host_id: str) -> Optional[HeartbeatOut]:
        return self.store.get_latest(host_id)

    def get_metrics_summary(self, host_id: str, start: datetime, end: datetime) -> Optional[MetricsSummary]:
        start, end = as_utc(start), as_utc(end)
        if start > end:
            raise InvalidParameters("start must not be after end")
        return self.store.metrics_summary(host_id, start, end)

    def list_online_hosts(self) -> list[str]:
        return self.store.online_hosts(self.settings.liveness_window_seconds)

    async def pull_heartbeat(self, host_id: str) -> Optional[HeartbeatOut]:
        """Pull-based liveness: read the agent's /status and store it as a heartbeat."""
        try:
            payload = await self.fetcher.fetch_direct(host_id, "/status")
        except FetchFailed as exc:
            logger.info("Agent on %s is not responding: %s", host_id, exc.message)
            return None
        if not isinstance(payload, dict):
            logger.warning("Agent on %s returned a non-object status payload", host_id)
            return None
        try:
            return await self.record_heartbeat(host_id, payload)
        except ValidationError as exc:
            logger.warning("Agent on %s returned an invalid status payload: %d error(s)", host_id, exc.error_count())
            return None

    # ---------- shutdown ----------

    async def aclose(self) -> None:
        for flight in list(self._installs.values()):
            flight.cancel.set()
        tasks = list(self._tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.fetcher.aclose()
