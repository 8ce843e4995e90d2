import urllib.error
import urllib.request
from datetime import datetime, timezone

import pytest

from cloudprober.metrics import Distribution, EventMetrics, Int, Kind, Map, String
from cloudprober.surfacers.prometheus import (
    PromSurfacer,
    PrometheusConfig,
    prom_time,
    prom_type,
)

TS = datetime(2017, 6, 13, 5, 0, 37, 123456, tzinfo=timezone.utc)
PROM_TS = "1497330037123"


def new_event_metrics(sent, rcvd, resp_codes, ptype, probe):
    codes = Map("code", Int(0))
    for k, v in resp_codes.items():
        codes.inc_key_by(k, Int(v))
    return (
        EventMetrics(TS)
        .add_metric("sent", Int(sent))
        .add_metric("rcvd", Int(rcvd))
        .add_metric("resp-code", codes)
        .add_label("ptype", ptype)
        .add_label("probe", probe)
    )


def verify(ps, expected):
    for key, (metric_name, value) in expected.items():
        assert metric_name in ps.metrics
        assert key in ps.metrics[metric_name].data
        assert ps.metrics[metric_name].data[key].value == value
    data_count = sum(len(pm.data) for pm in ps.metrics.values())
    assert data_count == len(expected)


def scrape_em():
    codes = Map("code", Int(0))
    codes.inc_key_by("200", Int(19))
    latency = Distribution([1, 4])
    latency.add_sample(0.5)
    latency.add_sample(5)
    return (
        EventMetrics(TS)
        .add_metric("sent", Int(32))
        .add_metric("rcvd", Int(22))
        .add_metric("latency", latency)
        .add_metric("resp_code", codes)
        .add_label("ptype", "http")
    )


def test_record():
    ps = PromSurfacer(PrometheusConfig(include_timestamp=True))

    ps.record(new_event_metrics(32, 22, {"200": 22}, "http", "vm-to-google"))
    expected = {
        'sent{ptype="http",probe="vm-to-google"}': ("sent", "32"),
        'rcvd{ptype="http",probe="vm-to-google"}': ("rcvd", "22"),
        'resp_code{ptype="http",probe="vm-to-google",code="200"}': ("resp_code", "22"),
    }
    verify(ps, expected)

    ps.record(new_event_metrics(500, 492, {}, "ping", "vm-to-vm"))
    expected.update({
        'sent{ptype="ping",probe="vm-to-vm"}': ("sent", "500"),
        'rcvd{ptype="ping",probe="vm-to-vm"}': ("rcvd", "492"),
    })
    verify(ps, expected)

    ps.record(new_event_metrics(62, 50, {"200": 42, "204": 8}, "http", "vm-to-google"))
    expected.update({
        'sent{ptype="http",probe="vm-to-google"}': ("sent", "62"),
        'rcvd{ptype="http",probe="vm-to-google"}': ("rcvd", "50"),
        'resp_code{ptype="http",probe="vm-to-google",code="200"}': ("resp_code", "42"),
        'resp_code{ptype="http",probe="vm-to-google",code="204"}': ("resp_code", "8"),
    })
    verify(ps, expected)

    em = (
        EventMetrics(TS, kind=Kind.GAUGE)
        .add_metric("instance_id", String("23152113123131"))
        .add_metric("version", String("cloudradar-20170606-RC00"))
        .add_label("module", "sysvars")
    )
    ps.record(em)
    expected.update({
        'instance_id{module="sysvars",val="23152113123131"}': ("instance_id", "1"),
        'version{module="sysvars",val="cloudradar-20170606-RC00"}': ("version", "1"),
    })
    verify(ps, expected)
    assert ps.metrics["version"].typ == "gauge"
    assert ps.metrics["sent"].typ == "counter"


def test_invalid_names():
    ps = PromSurfacer()
    codes = Map("resp-code", Int(0))
    codes.inc_key_by("200", Int(19))
    ps.record(
        EventMetrics(TS)
        .add_metric("sent", Int(32))
        .add_metric("rcvd/sent", Int(22))
        .add_metric("resp", codes)
        .add_label("probe-type", "http")
        .add_label("probe/name", "vm-to-google")
    )
    verify(ps, {
        'sent{probe_type="http"}': ("sent", "32"),
        'resp{probe_type="http",resp_code="200"}': ("resp", "19"),
    })


EXPECTED_LINES = [
    'sent{ptype="http"} 32',
    'rcvd{ptype="http"} 22',
    'resp_code{ptype="http",code="200"} 19',
    'latency_sum{ptype="http"} 5.5',
    'latency_count{ptype="http"} 2',
    'latency_bucket{ptype="http",le="1"} 1',
    'latency_bucket{ptype="http",le="4"} 1',
    'latency_bucket{ptype="http",le="+Inf"} 2',
]


def test_scrape_output():
    ps = PromSurfacer(PrometheusConfig(include_timestamp=True))
    ps.record(scrape_em())
    data = ps.render()
    for header in ["#TYPE sent counter", "#TYPE rcvd counter", "#TYPE resp_code counter"]:
        assert header in data
    for line in EXPECTED_LINES:
        assert f"{line} {PROM_TS}\n" in data
    assert "#TYPE latency_sum histogram" in data


def test_scrape_output_no_timestamp():
    ps = PromSurfacer(PrometheusConfig(include_timestamp=False))
    ps.record(scrape_em())
    data = ps.render()
    for header in ["#TYPE sent counter", "#TYPE rcvd counter", "#TYPE resp_code counter"]:
        assert header in data
    for line in EXPECTED_LINES:
        assert f"{line}\n" in data
    assert PROM_TS not in data


def test_metrics_prefix():
    ps = PromSurfacer(PrometheusConfig(metrics_prefix="cloudprober_", include_timestamp=False))
    ps.record(EventMetrics(TS).add_metric("sent", Int(3)).add_label("ptype", "http"))
    assert ps.render() == '#TYPE cloudprober_sent counter\ncloudprober_sent{ptype="http"} 3\n'


def test_write_then_process_pending():
    ps = PromSurfacer()
    ps.write(new_event_metrics(1, 1, {}, "http", "p"))
    ps.write(new_event_metrics(2, 2, {}, "http", "p"))
    assert ps.metrics == {}
    assert ps.process_pending() == 2
    assert ps.metrics["sent"].data['sent{ptype="http",probe="p"}'].value == "2"


def test_write_drops_when_full():
    ps = PromSurfacer(PrometheusConfig(metrics_buffer_size=1))
    ps.write(new_event_metrics(1, 1, {}, "http", "p"))
    ps.write(new_event_metrics(2, 2, {}, "http", "p"))
    assert ps.process_pending() == 1
    assert ps.metrics["sent"].data['sent{ptype="http",probe="p"}'].value == "1"


def test_prom_time():
    assert prom_time(TS) == 1497330037123
    assert prom_time(datetime(1970, 1, 1, tzinfo=timezone.utc)) == 0


@pytest.mark.parametrize(
    "kind, expected", [(Kind.CUMULATIVE, "counter"), (Kind.GAUGE, "gauge")]
)
def test_prom_type(kind, expected):
    assert prom_type(EventMetrics(TS, kind=kind)) == expected


def test_serve():
    ps = PromSurfacer(PrometheusConfig(metrics_url="/metrics_test", include_timestamp=False))
    ps.write(EventMetrics(TS).add_metric("sent", Int(7)).add_label("ptype", "http"))
    server = ps.serve("127.0.0.1", 0)
    try:
        port = server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics_test", timeout=5) as resp:
            body = resp.read().decode()
            assert resp.status == 200
        assert body == '#TYPE sent counter\nsent{ptype="http"} 7\n'
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            urllib.request.urlopen(f"http://127.0.0.1:{port}/other", timeout=5)
        assert excinfo.value.code == 404
    finally:
        server.shutdown()
        server.server_close()