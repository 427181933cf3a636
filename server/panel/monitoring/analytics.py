"""
Analytics snapshot schema.

Agents and the object-storage fallback produce two payload shapes: the current
aggregated one (stats + per-dimension aggregations) and the older summary that
only carries totals and top lists. ``decode_snapshot`` is the one place that
tells them apart; everything downstream works on the tagged union.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from ..core.errors import FetchFailed


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RankedEntry(_Model):
    key: str
    count: int


class SnapshotStats(_Model):
    visitors: int = 0
    pageviews: int = 0
    countries: int = 0
    top_browser: Optional[str] = None


class Aggregations(_Model):
    by_country: dict[str, int] = Field(default_factory=dict)
    by_browser: dict[str, int] = Field(default_factory=dict)
    by_platform: dict[str, int] = Field(default_factory=dict)


class _SnapshotBase(_Model):
    host_id: str
    since: Optional[str] = None
    total: int = 0
    top_paths: list[RankedEntry] = Field(default_factory=list)
    top_ips: list[RankedEntry] = Field(default_factory=list, alias="topIPs")
    top_status: list[RankedEntry] = Field(default_factory=list)


class AggregatedSnapshot(_SnapshotBase):
    schema_version: Literal[2] = 2
    stats: SnapshotStats = Field(default_factory=SnapshotStats)
    aggregations: Aggregations = Field(default_factory=Aggregations)


class LegacySnapshot(_SnapshotBase):
    schema_version: Literal[1] = 1


AnalyticsSnapshot = Annotated[Union[AggregatedSnapshot, LegacySnapshot], Field(discriminator="schema_version")]

_snapshot_adapter = TypeAdapter(AnalyticsSnapshot)


def _top_key(counts: dict[str, int], default: str) -> str:
    if not counts:
        return default
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


def decode_snapshot(host_id: str, payload: Any) -> AnalyticsSnapshot:
    if not isinstance(payload, dict):
        raise FetchFailed("Agent returned an unexpected analytics payload")
    data = dict(payload)
    data["hostId"] = host_id
    # agents do not tag their payloads; the shape decides the version
    data["schemaVersion"] = 2 if data.get("aggregations") is not None and data.get("stats") is not None else 1
    try:
        return _snapshot_adapter.validate_python(data)
    except ValidationError as exc:
        raise FetchFailed(f"Agent returned a malformed analytics payload: {exc.error_count()} error(s)", cause=exc) from exc


def render_snapshot(snapshot: AnalyticsSnapshot) -> dict[str, Any]:
    """Dashboard response shape shared by both schema versions."""
    top_lists = {
        "topPaths": [e.model_dump() for e in snapshot.top_paths],
        "topIPs": [e.model_dump() for e in snapshot.top_ips],
        "topStatus": [e.model_dump() for e in snapshot.top_status],
    }
    if isinstance(snapshot, LegacySnapshot):
        return {
            "schemaVersion": 1,
            "analyticsData": [],
            "stats": {"visitors": 0, "pageviews": snapshot.total, "countries": 0, "topBrowser": "-"},
            **top_lists,
            "since": snapshot.since,
        }

    aggs = snapshot.aggregations
    top_browser = _top_key(aggs.by_browser, "Unknown")
    top_platform = _top_key(aggs.by_platform, "Unknown")
    analytics_data = [
        {
            "ip": "Aggregated",
            "country": country,
            "browser": top_browser,
            "platform": top_platform,
            "url": "/",
            "count": count,
        }
        for country, count in aggs.by_country.items()
    ]
    stats = snapshot.stats
    return {
        "schemaVersion": 2,
        "analyticsData": analytics_data,
        "stats": {
            "visitors": stats.visitors,
            "pageviews": stats.pageviews or snapshot.total,
            "countries": stats.countries,
            "topBrowser": stats.top_browser or _top_key(aggs.by_browser, "-"),
        },
        "aggregations": aggs.model_dump(by_alias=True),
        **top_lists,
        "since": snapshot.since,
    }
