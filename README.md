# imgsync

imgsync moves files from one place to another, driven by rows in a database.
It has three parts:

- **Sniffer** (`imgsync.sniffer`, with `imgsync.query`, `imgsync.state`,
  `imgsync.enqueue`, `imgsync.traceid`): polls a source table, keeps a
  `(timestamp, primary key)` watermark per source in `sniffer_state`, and
  inserts one row per new source row into `transfer_jobs`. Inserts are
  deduplicated on `(trace_id, dst)`.
- **Worker** (`imgsync.job`, `imgsync.process`, `imgsync.runner`): leases
  pending jobs, streams each file from a source to a destination, checks the
  byte counts, and records the outcome (succeeded, skipped, retry with
  backoff, or dead) together with a `transfer_events` row.
- **Sweeper** (`imgsync.sweeper`): puts jobs whose lease has gone stale back
  to `pending` and records an `expire` event. It never bumps `attempts`.

Bodies are streamed, never held in memory in full. Destinations are written
under a temporary name and renamed into place.

## Database access

Every database-facing piece takes a DB-API 2.0 connection and writes its SQL
with `?` placeholders, rewritten for the connection's paramstyle (`qmark`,
`format`, `pyformat` or `numeric`):

- `StateRepo(conn, paramstyle="qmark")`, `Enqueuer(conn, paramstyle="qmark")`
- `Query(..., paramstyle="qmark")`, `SweeperConfig(..., paramstyle="qmark")`
- `Deps(..., paramstyle="qmark")`, `Runner(..., paramstyle="qmark")`
- `lease_job(pool, locked_by)` reads `pool.paramstyle` if present, else `qmark`.

Timestamps are passed as ISO-8601 UTC text. The SQL uses
`INSERT ... ON CONFLICT` upserts; `sweep` additionally calls PostgreSQL's
`pg_try_advisory_xact_lock(hashtext(...))`, so it needs PostgreSQL.

## Sources and transports

A source's `open(src)` returns `(stream, size)`, with size `-1` when unknown.
A transport's `send(dst, body, expected_size)` returns
`(bytes_written, sha256_hex)`. The `Source` and `Transport` protocols in
`imgsync.errors` describe this contract.

| Protocol   | Source        | Transport        | Module                 |
|------------|---------------|------------------|------------------------|
| local disk | `LocalSource` | `LocalTransport` | `imgsync.localfs`      |
| FTP        | `FtpSource`   | `FtpTransport`   | `imgsync.ftp_transfer` |

```python
from imgsync.localfs import LocalSource, LocalTransport

body, size = LocalSource().open("/data/in/photo.jpg")
with body:
    written, sha256_hex = LocalTransport().send("/data/out/photo.jpg", body, size)
```

`LocalTransport` writes to a `.imgsync-*.tmp` file beside the destination,
fsyncs it and renames it; on failure the temp file is removed.

`FtpTransport` uploads `ftp://host/path` to `path + ".imgsync.tmp"`, renames it
on success, and deletes the temp file on failure. An invalid destination URL
raises `ValueError`. `FtpSource` opens `ftp://host[:port]/path`; closing the
returned stream hands the connection back to the pool.

Both FTP classes share an `FtpPool` built from a `PoolConfig` (durations in
seconds): `max_per_host` (4), `idle_ttl` (300), `noop_after` (60),
`auth_user`, `auth_password`, `dial_timeout` (10) and an optional
`on_pool_change(host, in_use, idle)` callback. Connections are made with
`ftplib.FTP` unless a `dialer(host, config)` is given.

- `pool.acquire(host, timeout=None)` returns a `PooledConn`; it blocks at the
  per-host cap and raises `TimeoutError` when the timeout passes, or
  `PoolClosedError` after `close()`.
- `PooledConn.release(broken=False)` returns the connection, or closes it if
  broken. As a context manager it releases on exit, as broken if an exception
  was raised.
- `pool.idle_count(host)` reports idle connections; `pool.close()` drops them.

## Error classes

- `SkippableError`: not transferred on purpose (e.g. the source file is
  missing). The job becomes `skipped`; `attempts` is unchanged.
- `PermanentError`: retrying will not help (malformed URI, source is a
  directory, size mismatch). The job becomes `dead`.
- Anything else is retryable: the job returns to `pending` with a backoff of
  2, 4, 8, … seconds until `max_attempts` is reached, then becomes `dead`.

`is_not_found(err)` decides whether an FTP error means a missing file: phrases
such as "no such file" or "not found" always do, and a bare `550` does unless
it mentions permission or access denied.

## Trace IDs and templates

```python
from imgsync.traceid import trace_id, DstTemplate

trace_id("images", "12345")  # "images-12345"

tmpl = DstTemplate(pattern="/incoming/{{.FilePath}}", shadow=True)
tmpl.render({"FilePath": "2026/04/img.jpg"})
# "/incoming/2026/04/img.jpg.imgsync_shadow_v1"
```

Only `{{.name}}` placeholders are supported. An empty pattern, an unsupported
action or a missing field raises `ValueError`.

## Running the parts

- `Sniffer(SnifferConfig(...)).run_once()` runs one poll and returns the number
  of jobs inserted. The watermark advances only after the whole batch is
  enqueued; `on_enqueue(source_id, n)` fires on success and
  `on_error(source_id)` before an error is raised.
- `process_job(deps, job)` drives one leased job to its outcome; only database
  errors propagate.
- `Runner(connect=..., source_for=..., transport_for=..., workers=4).run(stop)`
  starts worker threads, each with its own connection from `connect()`, until
  the `threading.Event` `stop` is set. A factory that raises (for example
  `UnknownProtocolError`) marks the job dead.
- `sweep(pool, SweeperConfig(threshold=300))` runs one recovery cycle and
  returns the number of jobs recovered; `run(pool, config, stop)` repeats it
  every `interval` seconds, logging cycle errors, until `stop` is set.

## What this package does not do

- It does not create the `transfer_jobs`, `transfer_events` or `sniffer_state`
  tables; the schema must already exist.
- It has no command-line program, configuration loader, metrics or health
  endpoint. The parts are wired together in your own code.
- It does not open database connections for you, apart from calling the
  `connect` function you give to `Runner`.