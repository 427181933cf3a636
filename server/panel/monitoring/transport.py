"""
AWS boundary adapter for the remote-execution control plane.

Wraps the blocking boto3 SSM/EC2 clients behind async methods (each call runs in
a worker thread with a bounded timeout) and turns the SDK's loosely shaped
responses into small typed records with explicit defaults. Botocore errors are
translated into the panel error hierarchy here and nowhere else.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings
from ..core.errors import CommandNotFound, HostUnreachable, TargetUnreachable

logger = logging.getLogger(__name__)

RUN_SHELL_DOCUMENT = "AWS-RunShellScript"

# Invocation statuses SSM reports besides the six the panel models
_SSM_STATUS_ALIASES = {
    "Delayed": "Pending",
    "Cancelling": "InProgress",
}


@dataclass(frozen=True)
class InstanceInfo:
    instance_id: str
    exists: bool
    state: str = "unknown"
    public_ip: Optional[str] = None


@dataclass(frozen=True)
class Invocation:
    command_id: str
    instance_id: str
    status: str = "Pending"
    stdout: str = ""
    stderr: str = ""


def make_client(service: str, settings: Settings, *, read_timeout: Optional[float] = None):
    cfg = Config(
        region_name=settings.aws_region,
        connect_timeout=settings.probe_timeout,
        read_timeout=read_timeout or settings.aws_call_timeout,
        retries={"max_attempts": 2, "mode": "standard"},
    )
    kwargs: dict[str, Any] = {"config": cfg}
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    return boto3.client(service, **kwargs)


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "") or ""


class AwsControlPlane:
    """SSM RunCommand plus the EC2 lookups needed to target an instance."""

    def __init__(self, settings: Settings, ssm_client=None, ec2_client=None):
        self.settings = settings
        self._ssm = ssm_client
        self._ec2 = ec2_client

    @property
    def ssm(self):
        if self._ssm is None:
            self._ssm = make_client("ssm", self.settings)
        return self._ssm

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = make_client("ec2", self.settings)
        return self._ec2

    async def _call(self, fn: Callable[..., dict], **kwargs: Any) -> dict:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, **kwargs),
            timeout=self.settings.aws_call_timeout,
        )

    async def describe_instance(self, instance_id: str) -> InstanceInfo:
        try:
            resp = await self._call(self.ec2.describe_instances, InstanceIds=[instance_id])
        except ClientError as exc:
            if _error_code(exc).startswith("InvalidInstanceID"):
                return InstanceInfo(instance_id=instance_id, exists=False, state="not-found")
            raise HostUnreachable(f"Failed to describe instance {instance_id}: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise HostUnreachable(f"Failed to describe instance {instance_id}: {exc}") from exc

        reservations = resp.get("Reservations") or []
        instances = (reservations[0].get("Instances") or []) if reservations else []
        if not instances:
            return InstanceInfo(instance_id=instance_id, exists=False, state="not-found")
        inst = instances[0]
        public_ip = inst.get("PublicIpAddress")
        if not public_ip:
            # Elastic IP association on the primary interface
            for nic in inst.get("NetworkInterfaces") or []:
                public_ip = (nic.get("Association") or {}).get("PublicIp")
                if public_ip:
                    break
        return InstanceInfo(
            instance_id=instance_id,
            exists=True,
            state=(inst.get("State") or {}).get("Name") or "unknown",
            public_ip=public_ip or None,
        )

    async def ping_status(self, instance_id: str) -> Optional[str]:
        """SSM ping status of the instance, or None when it is not registered."""
        try:
            resp = await self._call(
                self.ssm.describe_instance_information,
                Filters=[{"Key": "InstanceIds", "Values": [instance_id]}],
            )
        except (ClientError, BotoCoreError, asyncio.TimeoutError) as exc:
            raise HostUnreachable(f"Failed to query SSM registration for {instance_id}: {exc}") from exc
        for item in resp.get("InstanceInformationList") or []:
            if item.get("InstanceId") == instance_id:
                return item.get("PingStatus") or "Unknown"
        return None

    async def send_command(self, instance_id: str, commands: list[str], comment: str, timeout_seconds: int) -> str:
        try:
            resp = await self._call(
                self.ssm.send_command,
                InstanceIds=[instance_id],
                DocumentName=RUN_SHELL_DOCUMENT,
                Comment=comment[:100],
                Parameters={"commands": commands},
                TimeoutSeconds=timeout_seconds,
            )
        except ClientError as exc:
            raise TargetUnreachable(f"Instance {instance_id} rejected command: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise TargetUnreachable(f"Could not submit command to {instance_id}: {exc}") from exc
        command_id = (resp.get("Command") or {}).get("CommandId")
        if not command_id:
            raise TargetUnreachable("Failed to get command ID from SSM.")
        return command_id

    async def get_invocation(self, command_id: str, instance_id: str) -> Invocation:
        try:
            resp = await self._call(
                self.ssm.get_command_invocation,
                CommandId=command_id,
                InstanceId=instance_id,
            )
        except ClientError as exc:
            if _error_code(exc) in ("InvocationDoesNotExist", "InvalidCommandId"):
                raise CommandNotFound(f"Command {command_id} not found for {instance_id}") from exc
            raise HostUnreachable(f"Failed to read command {command_id}: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise HostUnreachable(f"Failed to read command {command_id}: {exc}") from exc

        status = resp.get("Status") or "Pending"
        return Invocation(
            command_id=command_id,
            instance_id=instance_id,
            status=_SSM_STATUS_ALIASES.get(status, status),
            stdout=(resp.get("StandardOutputContent") or "").strip(),
            stderr=(resp.get("StandardErrorContent") or "").strip(),
        )
