"""Process runtime statistics exported as sysvars EventMetrics."""

from __future__ import annotations

import gc
import logging
import os
import sys
import threading
import time
from datetime import datetime

from cloudprober.metrics import EventMetrics, Float, Int, Kind

logger = logging.getLogger(__name__)

_gc_lock = threading.Lock()
_gc_total_seconds = 0.0
_gc_started: float | None = None


def _gc_callback(phase: str, info: dict) -> None:
    global _gc_total_seconds, _gc_started
    with _gc_lock:
        if phase == "start":
            _gc_started = time.perf_counter()
        elif phase == "stop" and _gc_started is not None:
            _gc_total_seconds += time.perf_counter() - _gc_started
            _gc_started = None


gc.callbacks.append(_gc_callback)


def _gc_time_msec() -> float:
    with _gc_lock:
        return _gc_total_seconds * 1000


def _gc_collected() -> int:
    return sum(stat.get("collected", 0) for stat in gc.get_stats())


def _process_memory_bytes() -> int:
    """Resident memory of the process, or 0 where it cannot be read."""
    try:
        with open("/proc/self/statm") as f:
            resident_pages = int(f.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    try:
        import resource
    except ImportError:
        return 0
    maxrss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return maxrss if sys.platform == "darwin" else maxrss * 1024


def _new_em(ts: datetime) -> EventMetrics:
    return EventMetrics(ts).add_label("ptype", "sysvars").add_label("probe", "sysvars")


def os_runtime_vars() -> EventMetrics | None:
    """CPU usage of the process; only exported on Linux."""
    if not sys.platform.startswith("linux"):
        return None
    em = _new_em(datetime.now().astimezone())
    em.add_metric("cpu_usage_msec", Float(time.process_time() * 1000))
    logger.info(str(em))
    return em


def counter_runtime_vars(ts: datetime, start_time: datetime) -> EventMetrics:
    """Stats that only grow over the process lifetime (CUMULATIVE)."""
    em = _new_em(ts)
    uptime = (datetime.now(start_time.tzinfo) - start_time).total_seconds()
    em.add_metric("uptime_msec", Float(uptime * 1000))
    em.add_metric("gc_time_msec", Float(_gc_time_msec()))
    frees = _gc_collected()
    em.add_metric("mallocs", Int(sys.getallocatedblocks() + frees))
    em.add_metric("frees", Int(frees))
    logger.info(str(em))
    return em


def gauge_runtime_vars(ts: datetime) -> EventMetrics:
    """Stats describing the current state of the process (GAUGE)."""
    em = _new_em(ts)
    em.kind = Kind.GAUGE
    em.add_metric("goroutines", Int(threading.active_count()))
    em.add_metric("mem_stats_sys_bytes", Int(_process_memory_bytes()))
    logger.info(str(em))
    return em


def runtime_vars(start_time: datetime) -> list[EventMetrics]:
    """All runtime EventMetrics for one export round."""
    ts = datetime.now(start_time.tzinfo)
    result = []
    os_em = os_runtime_vars()
    if os_em is not None:
        result.append(os_em)
    result.append(counter_runtime_vars(ts, start_time))
    result.append(gauge_runtime_vars(ts))
    return result