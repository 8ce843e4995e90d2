import queue
import threading
import time
import urllib.error
import urllib.request

import pytest

from cloudprober.metrics import Map
from cloudprober.servers.http import (
    OK,
    HTTPConfig,
    HTTPServer,
    LameduckLister,
    Protocol,
)

_opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))


def get(server, path):
    url = f"http://127.0.0.1:{server.address[1]}{path}"
    try:
        with _opener.open(url, timeout=5) as resp:
            return resp.status, resp.read().decode()
    except urllib.error.HTTPError as err:
        return err.code, err.read().decode()


@pytest.fixture
def make_server():
    running = []

    def factory(instance="testInstance", lister=None, **config):
        server = HTTPServer(
            HTTPConfig(port=0, **config),
            instance_name=instance,
            ld_lister=lister,
            stats_interval=0.2,
        )
        out = queue.Queue()
        stop = threading.Event()
        thread = threading.Thread(target=server.start, args=(out.put, stop), daemon=True)
        thread.start()
        running.append((stop, thread))
        return server, out

    yield factory
    for stop, thread in running:
        stop.set()
        thread.join(5)


@pytest.fixture
def plain_server():
    server = HTTPServer(
        HTTPConfig(port=0, pattern_data_handlers=[(5, "ab")]),
        instance_name="testInstance",
        ld_lister=LameduckLister(),
    )
    yield server
    server.close()


def test_listen_and_serve_stats(make_server):
    server, out = make_server(lister=LameduckLister())
    expected = {
        "/": OK,
        "/instance": "testInstance",
        "/lameduck": "false",
        "/healthcheck": OK,
    }
    for path, body in expected.items():
        assert get(server, path) == (200, body)

    deadline = time.monotonic() + 5
    counts = {}
    while time.monotonic() < deadline:
        em = out.get(timeout=5)
        req = em.metric("req")
        assert isinstance(req, Map)
        counts = {p: int(req.get_key(p) or 0) for p in expected}
        if all(c == 1 for c in counts.values()):
            break
    assert counts == {p: 1 for p in expected}


def test_lameducking_test_instance(make_server):
    server, _ = make_server(lister=LameduckLister())
    status, body = get(server, "/lameduck")
    assert "false" in body
    assert get(server, "/healthcheck") == (200, OK)

    server.ld_lister = LameduckLister(["testInstance"])
    status, body = get(server, "/lameduck")
    assert "true" in body
    status, _ = get(server, "/healthcheck")
    assert status == 503


def test_lameduck_lister_nil(make_server):
    server, _ = make_server(lister=None)
    status, body = get(server, "/lameduck")
    assert status == 200
    assert "not initialized" in body
    assert get(server, "/healthcheck") == (200, OK)


def test_not_found_is_not_counted(plain_server):
    status, body = plain_server.handle("/missing")
    assert status == 404
    assert body == b"not found\n"
    assert plain_server.stats().metric("req").keys() == []


def test_pattern_data_handler(plain_server):
    assert plain_server.handle("/data_5") == (200, b"ababa")


def test_stats_counts_requests(plain_server):
    plain_server.handle("/")
    plain_server.handle("/")
    plain_server.handle("/instance")
    req = plain_server.stats().metric("req")
    assert int(req.get_key("/")) == 2
    assert int(req.get_key("/instance")) == 1


def test_stats_is_a_snapshot(plain_server):
    plain_server.handle("/")
    em = plain_server.stats()
    plain_server.handle("/")
    assert int(em.metric("req").get_key("/")) == 1


def test_lameduck_status_without_lister():
    server = HTTPServer(HTTPConfig(port=0), instance_name="testInstance")
    try:
        with pytest.raises(RuntimeError, match="not initialized"):
            server.lameduck_status()
    finally:
        server.close()


def test_https_requires_cert_and_key():
    with pytest.raises(ValueError, match="tls_cert_file and tls_key_file"):
        HTTPServer(HTTPConfig(port=0, protocol=Protocol.HTTPS))


def test_lameduck_lister_returns_copy():
    lister = LameduckLister(["a"])
    names = lister.list()
    names.append("b")
    assert lister.list() == ["a"]