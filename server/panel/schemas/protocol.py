from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DiskUsage(_Wire):
    total: float
    used: float
    available: float
    percent: float


class NetworkStats(_Wire):
    bytes_in: float
    bytes_out: float
    packets_in: float
    packets_out: float


class SystemMetrics(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")
    cpu_load: float = 0.0
    memory_used_pct: float = 0.0
    uptime: float = 0.0
    disk_usage: Optional[DiskUsage] = None
    network_stats: Optional[NetworkStats] = None


class HeartbeatPayload(_Wire):
    host_id: str = Field(min_length=1)
    version: str = ""
    timestamp: Optional[datetime] = None
    metrics: SystemMetrics = Field(default_factory=SystemMetrics)
    blocked_ips: List[str] = Field(default_factory=list)
    status: Literal["online", "offline"] = "online"


class HeartbeatOut(_Wire):
    host_id: str
    timestamp: datetime
    version: str
    status: str
    metrics: Dict[str, Any]
    blocked_ips: List[str]
    received_at: datetime


class MetricsSummary(_Wire):
    host_id: str
    samples: int
    avg_cpu_load: float
    max_cpu_load: float
    avg_memory_used: float
    max_memory_used: float


class HostRequest(_Wire):
    host_id: str = Field(min_length=1)


class LoginRequest(BaseModel):
    username: str
    password: str = ""
