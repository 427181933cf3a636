"""
Command dispatcher: turns an agent lifecycle action into a RunCommand submission.

``dispatch`` never waits for the command to finish; callers poll the returned
id through :class:`~panel.monitoring.poller.CommandPoller`.
"""

import logging
import shlex
from typing import Any, Mapping, Optional

from ..config import Settings
from ..core.errors import HostUnreachable, InvalidParameters, TargetUnreachable
from ..db.models import utcnow
from .ledger import CommandLedger
from .transport import AwsControlPlane
from .types import AgentAction, RemoteCommand

logger = logging.getLogger(__name__)

# action -> (required parameters, RunCommand timeout in seconds)
ACTION_TABLE: dict[AgentAction, tuple[tuple[str, ...], int]] = {
    AgentAction.INSTALL: (("install_url",), 600),
    AgentAction.UNINSTALL: (("uninstall_url",), 300),
    AgentAction.START: (("service_name",), 60),
    AgentAction.STOP: (("service_name",), 60),
}


def build_script(action: AgentAction, params: Mapping[str, Any]) -> list[str]:
    if action is AgentAction.INSTALL:
        url = shlex.quote(str(params["install_url"]))
        return [
            "set -e",
            'echo "Checking internet connectivity..."',
            'ping -c 1 8.8.8.8 > /dev/null 2>&1 || { echo "ERROR: No internet connectivity. Cannot download install script."; exit 1; }',
            'echo "Downloading install script..."',
            f'curl -fSL --connect-timeout 10 --max-time 30 {url} -o /tmp/install-agent.sh 2>&1 || {{ echo "ERROR: Failed to download install script"; exit 1; }}',
            "chmod +x /tmp/install-agent.sh",
            'echo "Running install script..."',
            'sudo bash /tmp/install-agent.sh 2>&1 || { echo "ERROR: Install script failed. Exit code: $?"; exit 1; }',
            'echo "Installation completed successfully"',
        ]
    if action is AgentAction.UNINSTALL:
        url = shlex.quote(str(params["uninstall_url"]))
        return [
            f"curl -fsSL {url} | sudo bash",
            'echo "Uninstall completed"',
        ]
    service = shlex.quote(str(params["service_name"]))
    if action is AgentAction.START:
        return [
            f"sudo systemctl enable {service} 2>&1 || true",
            f"sudo systemctl restart {service} 2>&1",
            f'systemctl is-active --quiet {service} && echo "Agent started" || {{ echo "ERROR: agent failed to start"; exit 1; }}',
        ]
    return [
        f"sudo systemctl stop {service} 2>&1",
        'echo "Agent stopped"',
    ]


class CommandDispatcher:
    def __init__(self, transport: AwsControlPlane, settings: Settings, ledger: Optional[CommandLedger] = None):
        self.transport = transport
        self.settings = settings
        self.ledger = ledger

    def _defaults(self) -> dict[str, Any]:
        return {
            "install_url": self.settings.agent_install_url,
            "uninstall_url": self.settings.agent_uninstall_url,
            "service_name": self.settings.agent_service_name,
        }

    def resolve_parameters(self, action: AgentAction, parameters: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        params = self._defaults()
        params.update({k: v for k, v in (parameters or {}).items() if v is not None})
        required, _ = ACTION_TABLE[action]
        missing = [name for name in required if not str(params.get(name) or "").strip()]
        if missing:
            raise InvalidParameters(f"{action.value} requires parameter(s): {', '.join(missing)}")
        return params

    async def ensure_reachable(self, host_id: str) -> None:
        try:
            instance = await self.transport.describe_instance(host_id)
            ping = await self.transport.ping_status(host_id)
        except HostUnreachable as exc:
            raise TargetUnreachable(exc.message) from exc
        if not instance.exists:
            raise TargetUnreachable(f"Instance {host_id} not found in EC2.")
        if instance.state != "running":
            raise TargetUnreachable(
                f"Instance {host_id} is in state '{instance.state}'. "
                f"SSM commands can only be sent to instances in 'running' state."
            )
        if ping != "Online":
            raise TargetUnreachable(
                f"SSM agent is not installed or not running on instance {host_id}. "
                f"Please install SSM agent first."
            )

    async def dispatch(
        self,
        host_id: str,
        action: AgentAction,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> RemoteCommand:
        if not host_id or not host_id.strip():
            raise InvalidParameters("host_id is required")
        try:
            action = AgentAction(action)
        except ValueError:
            raise InvalidParameters(f"Unknown agent action: {action!r}")

        params = self.resolve_parameters(action, parameters)
        await self.ensure_reachable(host_id)

        _, timeout_seconds = ACTION_TABLE[action]
        command_id = await self.transport.send_command(
            host_id,
            build_script(action, params),
            comment=f"{action.value} monitoring agent",
            timeout_seconds=timeout_seconds,
        )
        command = RemoteCommand(
            command_id=command_id,
            target_host=host_id,
            action=action,
            submitted_at=utcnow(),
        )
        if self.ledger is not None:
            self.ledger.record(command)
        logger.info("Dispatched %s to %s (command %s)", action.value, host_id, command_id)
        return command
