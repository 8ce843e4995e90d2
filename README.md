# cloudprober

Building blocks for active monitoring: a small metrics model, an exporter
for system variables and runtime statistics, metric surfacers, and
lightweight servers that act as probe targets. There are no third-party
runtime dependencies.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Metrics

`cloudprober.metrics` defines `EventMetrics`. This is a timestamped group of
labelled metrics with a `Kind` (`CUMULATIVE` or `GAUGE`). A metric value is
one of these:

- `Int`
- `Float`
- `String`
- `Map`, which holds numeric values keyed by string and is changed with
  `inc_key` and `inc_key_by`.
- `Distribution`, which is a histogram over explicit bucket bounds and is
  filled with `add_sample`.

Metrics and labels are added with `add_metric` and `add_label`. Both return
the `EventMetrics`, so calls can be chained. `metrics_keys` and
`labels_keys` give the keys in insertion order.

`Surfacer` is the abstract base class of everything that accepts
`EventMetrics` through `write`.

## System variables

`cloudprober.sysvars.SysVars` holds process-level variables: `version`,
`hostname`, and any values passed to `init`. `init` takes effect only the
first time it is called. `vars` returns a copy of the variables, or an
empty dict before `init`.

`export` returns one round of `EventMetrics`. It adds the variables found
in a named environment variable of the form `key=value,key=value` (parsed
by `parse_env_vars`, which skips malformed entries). It also adds a
`start_timestamp`. The result is one GAUGE `EventMetrics` with every
variable as a `String` metric, followed by the runtime statistics.
`start(out, interval, env_vars_name, stop_event)` calls `export` every
`interval` seconds and passes each result to `out`. It stops when
`stop_event` is set.

`cloudprober.runtime` supplies the runtime statistics:

- `counter_runtime_vars`: uptime, time spent in garbage collection,
  allocation and free counts (CUMULATIVE).
- `gauge_runtime_vars`: active thread count and process memory (GAUGE).
- `os_runtime_vars`: process CPU time. This is produced on Linux only.

## Surfacers

- `cloudprober.surfacers.prometheus.PromSurfacer` keeps the latest value of
  every series. `write` queues data, and `process_pending` records what is
  queued. `write_data` and `render` produce the Prometheus text exposition
  format, with or without timestamps according to `PrometheusConfig`.
  `serve(host, port)` serves the metrics URL over HTTP in a background
  thread.
  - A `Map` value becomes one series per key.
  - A `Distribution` becomes `_sum`, `_count` and cumulative `_bucket`
    series.
  - A `String` value becomes a `val` label with the value 1.
  - A `-` in a name is replaced by `_`. Names that are still invalid are
    dropped.
- `cloudprober.surfacers.stackdriver.SDSurfacer` turns `EventMetrics` into
  `TimeSeries` records and caches them by metric name and labels.
  - The `ptype` and `probe` labels become a name prefix.
  - Strings and maps become DOUBLE series with extra labels.
  - Names longer than the 100-character limit are skipped, and so are
    names that do not match `allowed_metrics_regex`.
  - `flush` sends the cache in batches of 200 through a client callable
    that you supply, then clears the cache. Failed batches are counted in
    `fail_count`.
- `cloudprober.surfacers.file.FileSurfacer` writes lines of the form
  `<prefix> <id> <event metrics>` to a file, or to standard output when no
  path is given. The id goes up by one for each line.
  - With `compression_enabled`, lines are collected in a
    `CompressionBuffer`. Each batch is written as one gzip-compressed,
    base64-encoded line (see `compress_bytes`).
  - `background=True` starts a worker thread. Without it, call
    `process_pending`.
  - `close` writes whatever is left. The surfacer can also be used as a
    context manager.

`cloudprober.surfacers.registry.init_surfacers` builds a list of
`SurfacerInfo` from `SurfacerDef` entries.

- An empty list gives the default surfacers, Prometheus and file.
- A definition with no type and no configuration is skipped. This is the
  way to turn the defaults off.
- A definition without a type takes the type of the configuration it
  holds (`infer_type`).
- Surfacers of type `USER_DEFINED` are looked up by name among those added
  with `register`.

`render_status` produces an HTML status table.

## Servers

- `cloudprober.servers.udp.UDPServer` is an echo or discard UDP server. It
  reads up to 4098 bytes per datagram. `start(stop_event)` serves until
  the event is set.
- `cloudprober.servers.http.HTTPServer` is a small HTTP or HTTPS server
  that answers the following paths:
  - `/` returns `ok`.
  - `/instance` returns the instance name.
  - `/lameduck` returns `true` or `false`, taken from a `LameduckLister`.
  - `/healthcheck` returns `ok`, or 503 while the instance is lameducked.
  - `/data_<size>` returns the payloads configured in `HTTPConfig`.

  `HTTPServer` counts requests per URL. `stats` returns those counts, and
  `start(out, stop_event)` passes them to `out` at every stats interval.

`cloudprober.servers.registry.init_servers` builds servers from a list of
`ServerDef` (HTTP or UDP). If any server fails, the ones already created
are closed. `render_status` produces an HTML status table.

## Command line

A stand-alone UDP server (`--type` is `echo` or `discard`, default `echo`):

```
cloudprober-udp-server --port 31122 --type echo
```

## What this package does not do

- There are no probes, no configuration file format, and no command that
  runs a complete prober. The pieces above are meant to be put together in
  your own code.
- There is no gRPC probe-target server and no database surfacer.
- `SDSurfacer` has no built-in Cloud Monitoring API client and does not
  read instance metadata. You pass in a client callable, and also
  `on_gce`, `instance_name` and `zone` if you want a `gce_instance`
  resource. A Stackdriver surfacer created through `init_surfacers` has no
  client, so its `flush` raises `RuntimeError` until one is set.
- `SysVars` does not collect cloud instance variables. Supply any you need
  through `init` or the environment variable.