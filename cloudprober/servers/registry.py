"""Creating the probe-target servers from their definitions."""

from __future__ import annotations

import dataclasses
import enum
import html
from dataclasses import dataclass
from typing import Any, Union

from cloudprober.servers.http import HTTPConfig, HTTPServer
from cloudprober.servers.udp import UDPConfig, UDPServer

Server = Union[HTTPServer, UDPServer]


class ServerType(enum.Enum):
    HTTP = 0
    UDP = 1


@dataclass
class ServerDef:
    """Definition of one server; its config matches its type."""

    type: ServerType = ServerType.HTTP
    http: HTTPConfig | None = None
    udp: UDPConfig | None = None


@dataclass
class ServerInfo:
    """A server together with its type and configuration text."""

    server: Server
    type: str
    conf: str = ""


def _conf_to_string(conf: Any) -> str:
    if conf is None:
        return ""
    return "\n".join(f"{f.name}: {getattr(conf, f.name)!r}" for f in dataclasses.fields(conf))


def init_servers(server_defs: list[ServerDef]) -> list[ServerInfo]:
    """Create the servers; on failure close those already created."""
    servers: list[ServerInfo] = []
    try:
        for sdef in server_defs:
            if sdef.type is ServerType.HTTP:
                server: Server = HTTPServer(sdef.http)
                conf: Any = sdef.http
            elif sdef.type is ServerType.UDP:
                server = UDPServer(sdef.udp)
                conf = sdef.udp
            else:
                raise ValueError(f"unknown server type: {sdef.type}")
            servers.append(ServerInfo(server=server, type=sdef.type.name, conf=_conf_to_string(conf)))
    except Exception:
        for info in servers:
            info.server.close()
        raise
    return servers


def render_status(infos: list[ServerInfo]) -> str:
    """HTML table of the servers for a status page."""
    rows = []
    for info in infos:
        conf = f"<pre>{html.escape(info.conf)}</pre>" if info.conf else "default"
        rows.append(
            "  <tr>\n"
            f"    <td>{html.escape(info.type)}</td>\n"
            f"    <td>{conf}</td>\n"
            "  </tr>\n"
        )
    return (
        '<table class="status-list">\n'
        "  <tr>\n    <th>Type</th>\n    <th>Conf</th>\n  </tr>\n"
        + "".join(rows)
        + "</table>\n"
    )