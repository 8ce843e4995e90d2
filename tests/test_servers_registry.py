import pytest

from cloudprober.servers.http import HTTPConfig, HTTPServer, Protocol
from cloudprober.servers.registry import (
    ServerDef,
    ServerInfo,
    ServerType,
    init_servers,
    render_status,
)
from cloudprober.servers.udp import UDPConfig, UDPServer


def _close(infos):
    for info in infos:
        info.server.close()


def test_no_definitions():
    assert init_servers([]) == []


def test_init_http_and_udp():
    infos = init_servers(
        [
            ServerDef(type=ServerType.HTTP, http=HTTPConfig(port=0)),
            ServerDef(type=ServerType.UDP, udp=UDPConfig(port=0)),
        ]
    )
    try:
        assert [info.type for info in infos] == ["HTTP", "UDP"]
        assert isinstance(infos[0].server, HTTPServer)
        assert isinstance(infos[1].server, UDPServer)
        assert infos[0].server.address[1] > 0
        assert infos[1].server.port > 0
    finally:
        _close(infos)


def test_conf_text_reflects_config():
    infos = init_servers([ServerDef(type=ServerType.UDP, udp=UDPConfig(port=0))])
    try:
        assert "port: 0" in infos[0].conf
    finally:
        _close(infos)


def test_init_error_propagates():
    with pytest.raises(ValueError, match="tls_cert_file"):
        init_servers(
            [
                ServerDef(type=ServerType.UDP, udp=UDPConfig(port=0)),
                ServerDef(type=ServerType.HTTP, http=HTTPConfig(port=0, protocol=Protocol.HTTPS)),
            ]
        )


def test_render_status_default_and_escaped():
    infos = [
        ServerInfo(server=None, type="HTTP", conf=""),
        ServerInfo(server=None, type="UDP", conf="a<b"),
    ]
    page = render_status(infos)
    assert page.startswith('<table class="status-list">')
    assert "<td>HTTP</td>" in page
    assert "default" in page
    assert "<pre>a&lt;b</pre>" in page
    assert page.count("<tr>") == 3