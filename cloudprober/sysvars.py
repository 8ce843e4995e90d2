"""System variables exporter: hostname, version, user and environment
variables, plus process runtime statistics."""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timezone

from cloudprober.metrics import EventMetrics, Kind, String
from cloudprober.runtime import runtime_vars

logger = logging.getLogger(__name__)


def parse_env_vars(env_vars_name: str, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Parse "k1=v1,k2=v2" from the named environment variable."""
    env = os.environ if environ is None else environ
    raw = env.get(env_vars_name, "")
    result: dict[str, str] = {}
    if not raw:
        return result
    logger.info("%s: %s", env_vars_name, raw)
    for item in raw.split(","):
        kv = item.split("=")
        if len(kv) != 2:
            logger.warning("Bad env var: %s, skipping", item)
            continue
        result[kv[0]] = kv[1]
    return result


class SysVars:
    """Holds the system variables; initialized once, then read-only."""

    def __init__(self, version: str = "") -> None:
        self.version = version
        self.start_time: datetime | None = None
        self._vars: dict[str, str] | None = None
        self._lock = threading.RLock()

    def init(self, user_vars: Mapping[str, str] | None = None) -> None:
        """Collect the variables. Later calls do nothing."""
        with self._lock:
            if self._vars is not None:
                return
            self.start_time = datetime.now(timezone.utc)
            found = {"version": self.version}
            try:
                found["hostname"] = socket.gethostname()
            except OSError as err:
                raise RuntimeError(f"error getting local hostname: {err}") from err
            found.update(user_vars or {})
            self._vars = found

    def vars(self) -> dict[str, str]:
        """A copy of the variables, or an empty dict before init()."""
        with self._lock:
            if self._vars is None:
                logger.error("Sysvars map is un-initialized. vars() was called before init().")
                return {}
            return dict(self._vars)

    def export(self, env_vars_name: str, ts: datetime | None = None) -> list[EventMetrics]:
        """One round of EventMetrics: the variables, then runtime stats."""
        if self.start_time is None:
            raise RuntimeError("sysvars not initialized")
        values = self.vars()
        values.update(parse_env_vars(env_vars_name))
        values["start_timestamp"] = str(int(self.start_time.timestamp()))

        em = EventMetrics(ts or datetime.now(timezone.utc), kind=Kind.GAUGE)
        em.add_label("ptype", "sysvars").add_label("probe", "sysvars")
        for key in sorted(values):
            em.add_metric(key, String(values[key]))
        logger.info(str(em))
        return [em, *runtime_vars(self.start_time)]

    def start(
        self,
        out: Callable[[EventMetrics], None],
        interval: float,
        env_vars_name: str,
        stop_event: threading.Event,
    ) -> None:
        """Export every interval seconds until stop_event is set."""
        while not stop_event.wait(interval):
            for em in self.export(env_vars_name):
                out(em)