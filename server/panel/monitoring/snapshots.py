"""
Aggregated analytics from object storage.

The agent ships access-log events to ``s3://{bucket}/{machineId}/`` as NDJSON.
When the live endpoint is unreachable, the panel recomputes the dashboard
numbers for a time window from those objects.
"""

import asyncio
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings
from ..core.errors import AggregationUnavailable
from .analytics import AggregatedSnapshot, Aggregations, RankedEntry, SnapshotStats
from .transport import make_client

logger = logging.getLogger(__name__)


def parse_user_agent(ua: Optional[str]) -> tuple[str, str]:
    if not ua:
        return "Unknown", "Unknown"
    s = ua.lower()
    browser = "Unknown"
    if "edg" in s:
        browser = "Edge"
    elif "opera" in s or "opr/" in s:
        browser = "Opera"
    elif "chrome" in s:
        browser = "Chrome"
    elif "firefox" in s:
        browser = "Firefox"
    elif "safari" in s:
        browser = "Safari"

    platform = "Unknown"
    if "windows" in s:
        platform = "Windows"
    elif "android" in s:
        platform = "Android"
    elif "iphone" in s or "ipad" in s or "ios" in s:
        platform = "iOS"
    elif "mac" in s:
        platform = "macOS"
    elif "linux" in s:
        platform = "Linux"
    return browser, platform


def _ranked(counter: Counter, n: int) -> list[RankedEntry]:
    items = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:n]
    return [RankedEntry(key=k, count=c) for k, c in items]


def aggregate_events(host_id: str, events: Iterable[dict[str, Any]], since: datetime, top_n: int = 10) -> AggregatedSnapshot:
    ips: Counter = Counter()
    paths: Counter = Counter()
    statuses: Counter = Counter()
    browsers: Counter = Counter()
    platforms: Counter = Counter()
    countries: Counter = Counter()
    total = 0
    for ev in events:
        total += 1
        ips[str(ev.get("ip") or "unknown")] += 1
        paths[str(ev.get("path") or "/")] += 1
        statuses[str(ev.get("status", "0"))] += 1
        browser, platform = parse_user_agent(ev.get("ua"))
        browsers[browser] += 1
        platforms[platform] += 1
        countries[str(ev.get("country") or "Unknown")] += 1

    top_browser = _ranked(browsers, 1)
    return AggregatedSnapshot(
        host_id=host_id,
        since=since.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        total=total,
        stats=SnapshotStats(
            visitors=len(ips),
            pageviews=total,
            countries=len(countries),
            top_browser=top_browser[0].key if top_browser else "-",
        ),
        aggregations=Aggregations(
            by_country=dict(countries),
            by_browser=dict(browsers),
            by_platform=dict(platforms),
        ),
        top_paths=_ranked(paths, top_n),
        top_ips=_ranked(ips, top_n),
        top_status=_ranked(statuses, top_n),
    )


def parse_ndjson(content: str, key: str = "") -> list[dict[str, Any]]:
    events = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            ev = json.loads(line)
        except ValueError:
            logger.debug("Skipping malformed NDJSON line in %s: %s", key, line[:100])
            continue
        if isinstance(ev, dict):
            events.append(ev)
    return events


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class AggregatedSnapshotService:
    def __init__(self, settings: Settings, s3_client=None):
        self.settings = settings
        self._s3 = s3_client

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = make_client("s3", self.settings, read_timeout=self.settings.fetch_timeout)
        return self._s3

    def _load_events(self, machine_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        bucket = self.settings.analytics_bucket
        paginator = self.s3.get_paginator("list_objects_v2")
        keys: list[tuple[datetime, str]] = []
        for page in paginator.paginate(Bucket=bucket, Prefix=f"{machine_id}/"):
            for obj in page.get("Contents") or []:
                key = obj.get("Key")
                modified = obj.get("LastModified")
                if not key or modified is None:
                    continue
                modified = _aware(modified)
                if start <= modified <= end:
                    keys.append((modified, key))

        events: list[dict[str, Any]] = []
        for _, key in sorted(keys, reverse=True):
            try:
                body = self.s3.get_object(Bucket=bucket, Key=key)["Body"].read()
            except (ClientError, BotoCoreError) as exc:
                logger.warning("Failed to fetch s3://%s/%s: %s", bucket, key, exc)
                continue
            events.extend(parse_ndjson(body.decode("utf-8", errors="replace"), key))
        return events

    async def get_aggregated(self, host_id: str, machine_id: str, start: datetime, end: datetime) -> AggregatedSnapshot:
        start, end = _aware(start), _aware(end)
        if not self.settings.analytics_bucket:
            raise AggregationUnavailable("No analytics bucket configured")
        try:
            events = await asyncio.to_thread(self._load_events, machine_id, start, end)
        except (ClientError, BotoCoreError) as exc:
            raise AggregationUnavailable(f"Failed to read analytics from object storage: {exc}") from exc
        snapshot = aggregate_events(host_id, events, since=start, top_n=self.settings.top_n)
        logger.info("Aggregated %d events for %s (machine %s) from object storage", snapshot.total, host_id, machine_id)
        return snapshot
