"""
Heartbeat store.

Agents push heartbeats (or the panel pulls one from ``/status``). Every heartbeat
is kept for the retention window. A ``LatestHeartbeat`` row per host points at the
newest one by the heartbeat's own timestamp, so the dashboard can read a host's
last known state with primary-key lookups instead of probing the host.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..db.models import Heartbeat, LatestHeartbeat, as_utc, utcnow
from ..schemas.protocol import HeartbeatOut, HeartbeatPayload, MetricsSummary

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 1000


def _to_out(row: Heartbeat) -> HeartbeatOut:
    return HeartbeatOut(
        host_id=row.host_id,
        timestamp=row.timestamp,
        version=row.version,
        status=row.status,
        metrics=json.loads(row.metrics) if row.metrics else {},
        blocked_ips=json.loads(row.blocked_ips) if row.blocked_ips else [],
        received_at=row.received_at,
    )


class HeartbeatStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def record_heartbeat(self, host_id: str, payload: Union[HeartbeatPayload, dict[str, Any]]) -> HeartbeatOut:
        """Store one heartbeat. Re-recording the same (host, timestamp) is a no-op."""
        if isinstance(payload, dict):
            data = {k: v for k, v in payload.items() if k not in ("hostId", "host_id")}
            payload = HeartbeatPayload.model_validate({**data, "hostId": host_id})
        received = utcnow()
        ts = as_utc(payload.timestamp) if payload.timestamp else received

        # a concurrent first write for the same host can race on the pointer row
        for attempt in range(2):
            with Session(self.engine) as session:
                existing = session.exec(
                    select(Heartbeat).where(Heartbeat.host_id == host_id, Heartbeat.timestamp == ts)
                ).first()
                if existing:
                    return _to_out(existing)

                row = Heartbeat(
                    host_id=host_id,
                    timestamp=ts,
                    version=payload.version,
                    status=payload.status,
                    metrics=payload.metrics.model_dump_json(by_alias=True, exclude_none=True),
                    blocked_ips=json.dumps(payload.blocked_ips),
                    received_at=received,
                )
                session.add(row)
                session.flush()

                latest = session.get(LatestHeartbeat, host_id)
                if latest is None:
                    session.add(LatestHeartbeat(host_id=host_id, heartbeat_id=row.id, timestamp=ts, status=row.status))
                elif ts > latest.timestamp:
                    latest.heartbeat_id = row.id
                    latest.timestamp = ts
                    latest.status = row.status
                    session.add(latest)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    if attempt:
                        raise
                    continue
                session.refresh(row)
                logger.debug("Heartbeat saved for %s at %s", host_id, ts.isoformat())
                return _to_out(row)
        raise RuntimeError("unreachable")

    def get_latest(self, host_id: str) -> Optional[HeartbeatOut]:
        with Session(self.engine) as session:
            latest = session.get(LatestHeartbeat, host_id)
            if latest is None:
                return None
            row = session.get(Heartbeat, latest.heartbeat_id)
            return _to_out(row) if row else None

    def query(
        self,
        host_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[HeartbeatOut]:
        limit = max(1, min(limit, MAX_QUERY_LIMIT))
        stmt = select(Heartbeat).where(Heartbeat.host_id == host_id)
        if start is not None:
            stmt = stmt.where(Heartbeat.timestamp >= as_utc(start))
        if end is not None:
            stmt = stmt.where(Heartbeat.timestamp <= as_utc(end))
        stmt = stmt.order_by(Heartbeat.timestamp.desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_out(r) for r in session.exec(stmt).all()]

    def metrics_summary(self, host_id: str, start: datetime, end: datetime) -> Optional[MetricsSummary]:
        """CPU and memory averages and peaks over the window, or None if no heartbeat falls in it."""
        stmt = select(Heartbeat.metrics).where(
            Heartbeat.host_id == host_id,
            Heartbeat.timestamp >= as_utc(start),
            Heartbeat.timestamp <= as_utc(end),
        )
        with Session(self.engine) as session:
            rows = session.exec(stmt).all()
        if not rows:
            return None
        cpu: list[float] = []
        memory: list[float] = []
        for raw in rows:
            metrics = json.loads(raw) if raw else {}
            cpu.append(float(metrics.get("cpuLoad") or 0.0))
            memory.append(float(metrics.get("memoryUsedPct") or 0.0))
        return MetricsSummary(
            host_id=host_id,
            samples=len(rows),
            avg_cpu_load=sum(cpu) / len(cpu),
            max_cpu_load=max(cpu),
            avg_memory_used=sum(memory) / len(memory),
            max_memory_used=max(memory),
        )

    def online_hosts(self, window_seconds: int, now: Optional[datetime] = None) -> list[str]:
        cutoff = as_utc(now or utcnow()) - timedelta(seconds=window_seconds)
        with Session(self.engine) as session:
            rows = session.exec(
                select(LatestHeartbeat.host_id)
                .where(LatestHeartbeat.timestamp >= cutoff, LatestHeartbeat.status == "online")
                .order_by(LatestHeartbeat.host_id)
            ).all()
            return list(rows)

    def prune(self, older_than: datetime) -> int:
        cutoff = as_utc(older_than)
        with Session(self.engine) as session:
            keep = select(LatestHeartbeat.heartbeat_id)
            result = session.exec(
                delete(Heartbeat).where(Heartbeat.timestamp < cutoff, Heartbeat.id.not_in(keep))
            )
            session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("Pruned %d heartbeats older than %s", removed, cutoff.isoformat())
        return removed
