"""
Agent status probe.

A host whose status probe cannot be delivered raises ``HostUnreachable``; an agent that
is simply not installed or not running is a normal ``AgentStatus`` result.
"""

import asyncio
import json
import logging
import shlex

from ..config import Settings
from ..core.errors import HostUnreachable, PanelError, TargetUnreachable
from .transport import AwsControlPlane, Invocation
from .types import AgentStatus

logger = logging.getLogger(__name__)

RUNNING = "AGENT_RUNNING"
NOT_RUNNING = "AGENT_NOT_RUNNING"
INSTALLED = "AGENT_INSTALLED"
NOT_INSTALLED = "AGENT_NOT_INSTALLED"

_PROBE_READ_ATTEMPTS = 3


def parse_probe_output(host_id: str, stdout: str) -> AgentStatus:
    tokens = {line.strip() for line in stdout.splitlines() if line.strip()}
    return AgentStatus(
        host_id=host_id,
        is_installed=INSTALLED in tokens,
        is_running=RUNNING in tokens,
    )


class AgentStatusChecker:
    def __init__(self, transport: AwsControlPlane, settings: Settings):
        self.transport = transport
        self.settings = settings

    def probe_commands(self) -> list[str]:
        service = shlex.quote(self.settings.agent_service_name)
        binary = shlex.quote(self.settings.agent_binary_path)
        return [
            f'systemctl is-active --quiet {service} && echo "{RUNNING}" || echo "{NOT_RUNNING}"',
            f'test -x {binary} && echo "{INSTALLED}" || echo "{NOT_INSTALLED}"',
        ]

    async def _run_probe(self, host_id: str, commands: list[str], comment: str) -> Invocation:
        ping = await self.transport.ping_status(host_id)
        if ping != "Online":
            raise HostUnreachable(f"SSM agent on {host_id} is not online (ping status: {ping or 'not registered'})")
        try:
            command_id = await self.transport.send_command(host_id, commands, comment=comment, timeout_seconds=30)
        except TargetUnreachable as exc:
            raise HostUnreachable(exc.message) from exc

        invocation = None
        for _ in range(_PROBE_READ_ATTEMPTS):
            await asyncio.sleep(self.settings.status_probe_wait)
            try:
                invocation = await self.transport.get_invocation(command_id, host_id)
            except PanelError as exc:
                # invocation is not always visible immediately after submission
                logger.debug("Probe %s on %s not readable yet: %s", command_id, host_id, exc.message)
                continue
            if invocation.status in ("Success", "Failed", "Cancelled", "TimedOut"):
                return invocation
        raise HostUnreachable(f"Status probe on {host_id} did not complete in time")

    async def check_status(self, host_id: str) -> AgentStatus:
        invocation = await self._run_probe(host_id, self.probe_commands(), comment="Check monitoring agent status")
        # the status script always exits 0, so anything else means it never ran
        if invocation.status != "Success":
            raise HostUnreachable(
                f"Status probe on {host_id} ended {invocation.status}: {invocation.stderr or 'no output'}"
            )
        status = parse_probe_output(host_id, invocation.stdout)
        logger.debug("Agent status on %s: installed=%s running=%s", host_id, status.is_installed, status.is_running)
        return status

    async def get_machine_id(self, host_id: str) -> str:
        """Read the agent's machine id through the host's loopback, not the public path."""
        port = self.settings.agent_api_port
        invocation = await self._run_probe(
            host_id,
            [f"curl -s --max-time 5 http://127.0.0.1:{port}/internal/get-machine-id"],
            comment="Get machine ID from agent",
        )
        if invocation.status != "Success":
            raise HostUnreachable(f"Failed to get machine ID: {invocation.stderr or invocation.stdout or 'Unknown error'}")
        output = invocation.stdout.strip()
        if not output:
            raise HostUnreachable("Empty response from agent")
        try:
            data = json.loads(output)
        except ValueError:
            raise HostUnreachable(f"Invalid JSON response from agent: {output[:200]}")
        machine_id = data.get("machineId") if isinstance(data, dict) else None
        if not machine_id:
            raise HostUnreachable(f"Machine ID not found in response: {output[:200]}")
        return str(machine_id)
