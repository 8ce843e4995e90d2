"""Stackdriver (Cloud Monitoring) surfacer.

EventMetrics are turned into TimeSeries, cached by metric name and labels,
and sent in batches through a monitoring client. String and Map values,
which the monitoring API does not support, become DOUBLE series with extra
labels.
"""

from __future__ import annotations

import logging
import queue
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from cloudprober.metrics import (
    Distribution,
    EventMetrics,
    Float,
    Int,
    Kind,
    Map,
    String,
    Surfacer,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 200
WRITE_QUEUE_SIZE = 1000
MAX_METRIC_NAME_LENGTH = 100

# Sends one batch of time series for a project ("projects/<name>").
# It raises an exception when the call fails.
MonitoringClient = Callable[[str, Sequence["TimeSeries"]], Any]


@dataclass
class StackdriverConfig:
    """Settings of a Stackdriver surfacer."""

    project: str = ""
    monitoring_url: str = "custom.googleapis.com/cloudprober/"
    allowed_metrics_regex: str = ""
    batch_timer_sec: int = 10


@dataclass
class TimeSeries:
    """One data point of a metric, in the shape the monitoring API expects."""

    metric_type: str
    metric_labels: dict[str, str]
    metric_kind: str
    value_type: str
    start_time: str
    end_time: str
    value: dict[str, Any]
    resource: dict[str, Any] | None = None


def _rfc3339_nano(ts: datetime) -> str:
    """Format ts as RFC 3339 with trailing zeros of the fraction removed."""
    if ts.tzinfo is None:
        ts = ts.astimezone()
    text = (
        f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d}"
        f"T{ts.hour:02d}:{ts.minute:02d}:{ts.second:02d}"
    )
    if ts.microsecond:
        text += f".{ts.microsecond:06d}".rstrip("0")
    offset = ts.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset > timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _sd_kind(kind: Kind) -> str:
    if kind is Kind.GAUGE:
        return "GAUGE"
    if kind is Kind.CUMULATIVE:
        return "CUMULATIVE"
    return ""


def process_labels(em: EventMetrics) -> tuple[dict[str, str], str, str]:
    """Split the labels of em into series labels, a cache key and a name prefix.

    The "ptype" and "probe" labels are not kept as labels; they make up the
    metric name prefix "<ptype>/<probe>/".
    """
    labels: dict[str, str] = {}
    key_parts: list[str] = []
    ptype = probe = ""
    for key in em.labels_keys():
        if key == "ptype":
            ptype = em.label(key)
        elif key == "probe":
            probe = em.label(key)
        else:
            labels[key] = em.label(key)
            key_parts.append(f"{key}={labels[key]}")

    prefix = ""
    if ptype:
        prefix += ptype + "/"
    if probe:
        prefix += probe + "/"
    return labels, ",".join(key_parts), prefix


def valid_metric_length(metric_name: str, monitoring_url: str) -> bool:
    """Whether the full metric name stays within the 100 character limit."""
    return len(metric_name) + len(monitoring_url) <= MAX_METRIC_NAME_LENGTH


class SDSurfacer(Surfacer):
    """Caches time series built from EventMetrics and sends them in batches."""

    def __init__(
        self,
        config: StackdriverConfig | None = None,
        client: MonitoringClient | None = None,
        *,
        on_gce: bool = False,
        instance_name: str = "",
        zone: str = "",
        start_time: datetime | None = None,
    ) -> None:
        self.config = config or StackdriverConfig()
        self.client = client
        self.project_name = self.config.project
        self.on_gce = on_gce
        self.instance_name = instance_name
        self.zone = zone
        # Start time of cumulative metrics.
        self.start_time = start_time or datetime.now(timezone.utc)
        self.allowed_metrics_regex = (
            re.compile(self.config.allowed_metrics_regex)
            if self.config.allowed_metrics_regex
            else None
        )
        self.cache: dict[str, TimeSeries] = {}
        self.fail_count = 0
        self._queue: queue.Queue[EventMetrics] = queue.Queue(WRITE_QUEUE_SIZE)
        logger.info("Created a new stackdriver surfacer")

    def write(self, em: EventMetrics) -> None:
        """Queue em for recording; drop it if the queue is full."""
        try:
            self._queue.put_nowait(em)
        except queue.Full:
            logger.error("SDSurfacer's write channel is full, dropping new data.")

    def process_pending(self) -> int:
        """Record every queued EventMetrics; return how many were recorded."""
        count = 0
        while True:
            try:
                em = self._queue.get_nowait()
            except queue.Empty:
                return count
            self.record_event_metrics(em)
            count += 1

    def _record_time_series(
        self,
        metric_kind: str,
        metric_name: str,
        value_type: str,
        labels: dict[str, str],
        timestamp: datetime,
        value: dict[str, Any],
        cache_key: str,
    ) -> TimeSeries:
        end_time = _rfc3339_nano(timestamp)
        start_time = end_time if metric_kind == "GAUGE" else _rfc3339_nano(self.start_time)
        resource = None
        if self.on_gce:
            resource = {
                "type": "gce_instance",
                "labels": {"instance_id": self.instance_name, "zone": self.zone},
            }
        ts = TimeSeries(
            metric_type=self.config.monitoring_url + metric_name,
            metric_labels=labels,
            metric_kind=metric_kind,
            value_type=value_type,
            start_time=start_time,
            end_time=end_time,
            value=value,
            resource=resource,
        )
        self.cache[f"{metric_name},{cache_key}"] = ts
        return ts

    def record_event_metrics(self, em: EventMetrics) -> list[TimeSeries]:
        """Build time series from em, cache them and return them."""
        metric_kind = _sd_kind(em.kind)
        if not metric_kind:
            logger.warning("Unknown event metrics type (not CUMULATIVE or GAUGE): %s", em.kind)
            return []

        em_labels, cache_key, prefix = process_labels(em)
        result: list[TimeSeries] = []

        for key in em.metrics_keys():
            labels = dict(em_labels)
            name = prefix + key

            if self.allowed_metrics_regex and not self.allowed_metrics_regex.search(name):
                continue
            if not valid_metric_length(name, self.config.monitoring_url):
                logger.warning(
                    "Message name %r is greater than the 100 character limit, skipping write",
                    name,
                )
                continue

            val = em.metric(key)
            if isinstance(val, (Int, Float)):
                result.append(
                    self._record_time_series(
                        metric_kind, name, "DOUBLE", labels, em.timestamp,
                        {"doubleValue": float(int(val))}, cache_key,
                    )
                )
            elif isinstance(val, String):
                labels["val"] = str(val).strip('"')
                result.append(
                    self._record_time_series(
                        metric_kind, name, "DOUBLE", labels, em.timestamp,
                        {"doubleValue": 1.0}, cache_key,
                    )
                )
            elif isinstance(val, Map):
                for map_key in val.keys():
                    map_labels = {**labels, val.map_name: map_key}
                    result.append(
                        self._record_time_series(
                            metric_kind, name, "DOUBLE", map_labels, em.timestamp,
                            {"doubleValue": float(int(val.get_key(map_key)))}, cache_key,
                        )
                    )
            elif isinstance(val, Distribution):
                result.append(
                    self._record_time_series(
                        metric_kind, name, "DISTRIBUTION", labels, em.timestamp,
                        val.stackdriver_typed_value(), cache_key,
                    )
                )
            else:
                logger.warning("Unsupported value type: %r", val)
        return result

    def flush(self) -> int:
        """Send the cached time series in batches and clear the cache.

        Returns the number of batches sent; failed batches are logged and
        counted in fail_count.
        """
        if not self.cache:
            return 0
        if self.client is None:
            raise RuntimeError("no monitoring client configured")

        series = list(self.cache.values())
        batches = 0
        for start in range(0, len(series), BATCH_SIZE):
            end = min(len(series), start + BATCH_SIZE)
            logger.info("Sending entries %d through %d of %d", start, end, len(series))
            try:
                self.client(f"projects/{self.project_name}", series[start:end])
            except Exception as err:  # noqa: BLE001 - any client failure is counted
                self.fail_count += 1
                logger.warning("Unable to fulfill TimeSeries Create call. Err: %s", err)
            batches += 1
        self.cache.clear()
        return batches