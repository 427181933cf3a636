from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentAction(str, Enum):
    INSTALL = "Install"
    UNINSTALL = "Uninstall"
    START = "Start"
    STOP = "Stop"


class CommandState(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def progress(self) -> int:
        if self is CommandState.PENDING:
            return 0
        if self is CommandState.IN_PROGRESS:
            return 1
        return 2


TERMINAL_STATES = frozenset({
    CommandState.SUCCESS,
    CommandState.FAILED,
    CommandState.CANCELLED,
    CommandState.TIMED_OUT,
})


class LifecycleState(str, Enum):
    UNKNOWN = "Unknown"
    NOT_INSTALLED = "NotInstalled"
    INSTALLING = "Installing"
    INSTALLED_NOT_RUNNING = "InstalledNotRunning"
    RUNNING = "Running"
    FAILED = "Failed"


class RemoteCommand(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    command_id: str
    target_host: str
    action: AgentAction
    submitted_at: datetime


class CommandStatus(CamelModel):
    command_id: str
    state: CommandState
    output: Optional[str] = None
    error_text: Optional[str] = Field(default=None, alias="error")

    @property
    def last_output_line(self) -> Optional[str]:
        for text in (self.output, self.error_text):
            if text:
                lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
                if lines:
                    return lines[-1]
        return None


class AgentStatus(CamelModel):
    host_id: str
    is_installed: bool = False
    is_running: bool = False
    installation_in_progress: bool = False
    installation_command_id: Optional[str] = None

    @model_validator(mode="after")
    def _running_implies_installed(self) -> "AgentStatus":
        if self.is_running and not self.is_installed:
            self.is_installed = True
        return self

    @property
    def lifecycle_state(self) -> LifecycleState:
        if self.is_running:
            return LifecycleState.RUNNING
        if self.is_installed:
            return LifecycleState.INSTALLED_NOT_RUNNING
        if self.installation_in_progress:
            return LifecycleState.INSTALLING
        return LifecycleState.NOT_INSTALLED


class CommandAccepted(CamelModel):
    command_id: str
    status: str = CommandState.IN_PROGRESS.value
    deduplicated: bool = False


class ProgressUpdate(CamelModel):
    host_id: str
    state: LifecycleState
    message: str
    command_id: Optional[str] = None
    updated_at: datetime


class LifecycleReport(CamelModel):
    host_id: str
    state: LifecycleState
    message: str
    command_id: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state is LifecycleState.RUNNING
