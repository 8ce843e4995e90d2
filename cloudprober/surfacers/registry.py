"""Creating surfacers from their definitions, plus a registry of
user defined surfacers."""

from __future__ import annotations

import dataclasses
import enum
import html
import threading
from dataclasses import dataclass
from typing import Any

from cloudprober.metrics import Surfacer
from cloudprober.surfacers.file import FileConfig, FileSurfacer
from cloudprober.surfacers.prometheus import PrometheusConfig, PromSurfacer
from cloudprober.surfacers.stackdriver import SDSurfacer, StackdriverConfig

_user_defined: dict[str, Surfacer] = {}
_user_defined_lock = threading.Lock()


class SurfacerType(enum.Enum):
    NONE = 0
    PROMETHEUS = 1
    STACKDRIVER = 2
    FILE = 3
    USER_DEFINED = 99


@dataclass
class SurfacerDef:
    """Definition of one surfacer; at most one of the configs is set."""

    type: SurfacerType = SurfacerType.NONE
    name: str = ""
    prometheus: PrometheusConfig | None = None
    stackdriver: StackdriverConfig | None = None
    file: FileConfig | None = None

    @property
    def has_config(self) -> bool:
        return any(c is not None for c in (self.prometheus, self.stackdriver, self.file))


@dataclass
class SurfacerInfo:
    """A surfacer together with its type, name and configuration text."""

    surfacer: Surfacer
    type: str
    name: str = ""
    conf: str = ""


def _default_surfacers() -> list[SurfacerDef]:
    return [SurfacerDef(type=SurfacerType.PROMETHEUS), SurfacerDef(type=SurfacerType.FILE)]


def infer_type(sdef: SurfacerDef) -> SurfacerType:
    """The surfacer type implied by the config that is set."""
    if sdef.prometheus is not None:
        return SurfacerType.PROMETHEUS
    if sdef.stackdriver is not None:
        return SurfacerType.STACKDRIVER
    if sdef.file is not None:
        return SurfacerType.FILE
    return SurfacerType.NONE


def _conf_to_string(conf: Any) -> str:
    if conf is None:
        return ""
    return "\n".join(f"{f.name}: {getattr(conf, f.name)!r}" for f in dataclasses.fields(conf))


def _init_surfacer(sdef: SurfacerDef, stype: SurfacerType) -> tuple[Surfacer, Any]:
    if stype is SurfacerType.PROMETHEUS:
        return PromSurfacer(sdef.prometheus), sdef.prometheus
    if stype is SurfacerType.STACKDRIVER:
        return SDSurfacer(sdef.stackdriver), sdef.stackdriver
    if stype is SurfacerType.FILE:
        return FileSurfacer(sdef.file, background=True), sdef.file
    if stype is SurfacerType.USER_DEFINED:
        with _user_defined_lock:
            surfacer = _user_defined.get(sdef.name)
        if surfacer is None:
            raise ValueError(f"unregistered user defined surfacer: {sdef.name}")
        return surfacer, None
    raise ValueError(f"unknown surfacer type: {stype.name}")


def init_surfacers(sdefs: list[SurfacerDef] | None) -> list[SurfacerInfo]:
    """Create the surfacers defined by sdefs.

    With no definitions the default surfacers (prometheus and file) are
    created. A definition with neither type nor config, "surfacer {}",
    creates nothing, which is the way to turn the defaults off.
    """
    if not sdefs:
        sdefs = _default_surfacers()

    result = []
    for sdef in sdefs:
        stype = sdef.type
        if stype is SurfacerType.NONE:
            if not sdef.has_config:
                continue
            stype = infer_type(sdef)
        surfacer, conf = _init_surfacer(sdef, stype)
        result.append(
            SurfacerInfo(surfacer=surfacer, type=stype.name, name=sdef.name, conf=_conf_to_string(conf))
        )
    return result


def register(name: str, surfacer: Surfacer) -> None:
    """Make a user defined surfacer available under name."""
    with _user_defined_lock:
        _user_defined[name] = surfacer


def render_status(infos: list[SurfacerInfo]) -> str:
    """HTML table of the surfacers for a status page."""
    rows = []
    for info in infos:
        conf = f"<pre>{html.escape(info.conf)}</pre>" if info.conf else "default"
        rows.append(
            "  <tr>\n"
            f"    <td>{html.escape(info.type)}</td>\n"
            f"    <td>{html.escape(info.name)}</td>\n"
            f"    <td>{conf}</td>\n"
            "  </tr>\n"
        )
    return (
        '<table class="status-list">\n'
        "  <tr>\n    <th>Type</th>\n    <th>Name</th>\n    <th>Conf</th>\n  </tr>\n"
        + "".join(rows)
        + "</table>\n"
    )