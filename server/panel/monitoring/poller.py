"""
Command status polling.

``CommandPoller.poll`` is a single query. ``wait_for_command`` owns the loop:
it is given an explicit :class:`PollBudget` and an optional cancel event, and
always returns after at most ``budget.attempts`` queries.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..core.errors import PanelError
from .transport import AwsControlPlane
from .types import CommandState, CommandStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CommandStatus], Awaitable[None]]


@dataclass(frozen=True)
class PollBudget:
    attempts: int
    interval: float
    deadline: Optional[float] = None  # wall-clock seconds for the whole loop

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")


@dataclass
class PollOutcome:
    status: Optional[CommandStatus]
    attempts: int
    timed_out: bool = False
    cancelled: bool = False
    last_error: Optional[str] = None

    @property
    def state(self) -> Optional[CommandState]:
        return self.status.state if self.status else None

    @property
    def succeeded(self) -> bool:
        return self.state is CommandState.SUCCESS


async def pause(interval: float, cancel: Optional[asyncio.Event] = None) -> bool:
    """Sleep for ``interval`` seconds; True if ``cancel`` fired first."""
    if cancel is None:
        await asyncio.sleep(interval)
        return False
    if cancel.is_set():
        return True
    if interval <= 0:
        await asyncio.sleep(0)
        return cancel.is_set()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=interval)
        return True
    except asyncio.TimeoutError:
        return False


class CommandPoller:
    def __init__(self, transport: AwsControlPlane):
        self.transport = transport

    async def poll(self, command_id: str, host_id: str) -> CommandStatus:
        invocation = await self.transport.get_invocation(command_id, host_id)
        try:
            state = CommandState(invocation.status)
        except ValueError:
            logger.warning("Unrecognised status %r for command %s, treating as Pending", invocation.status, command_id)
            state = CommandState.PENDING
        return CommandStatus(
            command_id=command_id,
            state=state,
            output=invocation.stdout or None,
            error_text=invocation.stderr or None,
        )


async def wait_for_command(
    poller: CommandPoller,
    command_id: str,
    host_id: str,
    budget: PollBudget,
    *,
    on_progress: Optional[ProgressCallback] = None,
    cancel: Optional[asyncio.Event] = None,
) -> PollOutcome:
    """Poll until a terminal state, budget exhaustion or cancellation.

    Transport errors (and a not-yet-visible invocation right after submission)
    count as spent attempts. Reported states never move backwards: a poll that
    returns less progress than already observed is ignored.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    last: Optional[CommandStatus] = None
    last_error: Optional[str] = None

    for attempt in range(1, budget.attempts + 1):
        try:
            status = await poller.poll(command_id, host_id)
        except PanelError as exc:
            last_error = exc.message
            logger.warning("Polling command %s on %s failed (attempt %d/%d): %s",
                           command_id, host_id, attempt, budget.attempts, exc.message)
        else:
            last_error = None
            if last is not None and status.state.progress < last.state.progress:
                logger.debug("Ignoring regressed status %s for command %s", status.state.value, command_id)
            else:
                last = status
                if on_progress is not None:
                    await on_progress(status)
                if status.state.is_terminal:
                    return PollOutcome(status=status, attempts=attempt)

        if attempt == budget.attempts:
            break
        if budget.deadline is not None and loop.time() - started >= budget.deadline:
            break
        if await pause(budget.interval, cancel):
            return PollOutcome(status=last, attempts=attempt, cancelled=True, last_error=last_error)

    logger.warning("Command %s on %s did not reach a terminal state in time", command_id, host_id)
    return PollOutcome(status=last, attempts=attempt, timed_out=True, last_error=last_error)
