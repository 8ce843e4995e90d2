"""Prometheus surfacer: keeps the latest value of every metric in memory and
renders it in the Prometheus text exposition format.

Example output:
    #TYPE sent counter
    sent{ptype="dns",probe="vm-to-public-dns",dst="8.8.8.8"} 181299 1497330037000
"""

from __future__ import annotations

import logging
import queue
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from io import StringIO
from typing import TextIO

from cloudprober.metrics import Distribution, EventMetrics, Kind, Map, String, Surfacer

logger = logging.getLogger(__name__)

# Prometheus metric and label names must match these. "-" is replaced by "_"
# first; names that still don't match are dropped.
VALID_METRIC_NAME_REGEX = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
VALID_LABEL_NAME_REGEX = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

_HISTOGRAM = "histogram"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class PrometheusConfig:
    """Settings of a Prometheus surfacer."""

    metrics_url: str = "/metrics"
    metrics_prefix: str = ""
    include_timestamp: bool = True
    metrics_buffer_size: int = 10000


@dataclass
class _DataPoint:
    value: str
    timestamp: int


@dataclass
class _PromMetric:
    typ: str
    # Insertion-ordered: data key -> latest data point.
    data: dict[str, _DataPoint] = field(default_factory=dict)


def prom_type(em: EventMetrics) -> str:
    """Prometheus type name for the kind of an EventMetrics."""
    if em.kind is Kind.CUMULATIVE:
        return "counter"
    if em.kind is Kind.GAUGE:
        return "gauge"
    return "unknown"


def prom_time(ts: datetime) -> int:
    """Milliseconds since the Unix epoch."""
    if ts.tzinfo is None:
        ts = ts.astimezone()
    return (ts - _EPOCH) // timedelta(milliseconds=1)


def _format_float(value: float) -> str:
    """Shortest plain decimal form of a float, without exponent."""
    if value != value:
        return "NaN"
    if value in (float("inf"), float("-inf")):
        return "+Inf" if value > 0 else "-Inf"
    text = format(Decimal(repr(float(value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class PromSurfacer(Surfacer):
    """Holds the latest value and timestamp of each metric for scraping."""

    def __init__(self, config: PrometheusConfig | None = None) -> None:
        self.config = config or PrometheusConfig()
        self.prefix = self.config.metrics_prefix
        # Metric name -> metric, in order of first appearance.
        self.metrics: dict[str, _PromMetric] = {}
        self._queue: queue.Queue[EventMetrics] = queue.Queue(self.config.metrics_buffer_size)
        self._lock = threading.RLock()
        # Caches of already checked names; "" marks an invalid name.
        self._label_names: dict[str, str] = {}
        self._metric_names: dict[str, str] = {}
        logger.info("Initialized prometheus exporter at the URL: %s", self.config.metrics_url)

    def write(self, em: EventMetrics) -> None:
        """Queue em for recording; drop it if the queue is full."""
        try:
            self._queue.put_nowait(em)
        except queue.Full:
            logger.error("PromSurfacer's write channel is full, dropping new data.")

    def process_pending(self) -> int:
        """Record every queued EventMetrics; return how many were recorded."""
        count = 0
        with self._lock:
            while True:
                try:
                    em = self._queue.get_nowait()
                except queue.Empty:
                    return count
                self.record(em)
                count += 1

    def _record_metric(
        self, metric_name: str, labels: list[str], value: str, em: EventMetrics, typ: str = ""
    ) -> None:
        key = metric_name + "{" + ",".join(labels) + "}"
        point = _DataPoint(value, prom_time(em.timestamp))
        pm = self.metrics.get(metric_name)
        if pm is None:
            pm = _PromMetric(typ or prom_type(em))
            self.metrics[metric_name] = pm
        pm.data[key] = point

    def _check_label_name(self, name: str) -> str:
        if name in self._label_names:
            return self._label_names[name]
        logger.info("Checking validity of new label: %s", name)
        label = name.replace("-", "_")
        if not VALID_LABEL_NAME_REGEX.fullmatch(label):
            logger.warning("Ignoring invalid prometheus label name: %s", name)
            label = ""
        self._label_names[name] = label
        return label

    def _prom_metric_name(self, name: str) -> str:
        name = self.prefix + name
        if name in self._metric_names:
            return self._metric_names[name]
        logger.info("Checking validity of new metric: %s", name)
        metric = name.replace("-", "_")
        if not VALID_METRIC_NAME_REGEX.fullmatch(metric):
            logger.warning("Ignoring invalid prometheus metric name: %s", name)
            metric = ""
        self._metric_names[name] = metric
        return metric

    def record(self, em: EventMetrics) -> None:
        """Update the in-memory data with em.

        Map values become one data key per map key, with the map name as an
        extra label; distributions become _sum, _count and cumulative _bucket
        series; strings become a val="..." label with value 1.
        """
        with self._lock:
            labels = []
            for key in em.labels_keys():
                label_name = self._check_label_name(key)
                if label_name:
                    labels.append(f'{label_name}="{em.label(key)}"')

            for metric_name in em.metrics_keys():
                name = self._prom_metric_name(metric_name)
                if not name:
                    continue
                val = em.metric(metric_name)

                if isinstance(val, Map):
                    label_name = self._check_label_name(val.map_name)
                    if not label_name:
                        continue
                    for k in val.keys():
                        self._record_metric(
                            name, [*labels, f'{label_name}="{k}"'], str(val.get_key(k)), em
                        )
                elif isinstance(val, Distribution):
                    self._record_distribution(name, labels, val, em)
                elif isinstance(val, String):
                    self._record_metric(name, [*labels, f"val={val}"], "1", em)
                else:
                    self._record_metric(name, labels, str(val), em)

    def _record_distribution(
        self, name: str, labels: list[str], dist: Distribution, em: EventMetrics
    ) -> None:
        self._record_metric(f"{name}_sum", labels, _format_float(dist.sum), em, _HISTOGRAM)
        self._record_metric(f"{name}_count", labels, str(dist.count), em, _HISTOGRAM)
        bounds = dist.lower_bounds
        cumulative = 0
        for i, bucket_count in enumerate(dist.bucket_counts):
            cumulative += bucket_count
            le = "+Inf" if i == len(bounds) - 1 else _format_float(bounds[i + 1])
            self._record_metric(
                f"{name}_bucket", [*labels, f'le="{le}"'], str(cumulative), em, _HISTOGRAM
            )

    def write_data(self, out: TextIO) -> None:
        """Write all recorded data to out in exposition format."""
        with self._lock:
            for name, pm in self.metrics.items():
                out.write(f"#TYPE {name} {pm.typ}\n")
                for key, point in pm.data.items():
                    if self.config.include_timestamp:
                        out.write(f"{key} {point.value} {point.timestamp}\n")
                    else:
                        out.write(f"{key} {point.value}\n")

    def render(self) -> str:
        """Record pending data and return the scrape page."""
        with self._lock:
            self.process_pending()
            buf = StringIO()
            self.write_data(buf)
            return buf.getvalue()

    def serve(self, host: str = "", port: int = 9313) -> ThreadingHTTPServer:
        """Serve the metrics URL in a background thread; return the server."""
        surfacer = self
        url = self.config.metrics_url

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                if self.path.split("?", 1)[0] != url:
                    self.send_error(404, "not found")
                    return
                body = surfacer.render().encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: object) -> None:
                logger.debug(format, *args)

        server = ThreadingHTTPServer((host, port), _Handler)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        return server