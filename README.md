# wpgo

Building blocks for managing many WordPress sites over SSH with wp-cli. It is a library: it
has no dependencies beyond the standard library.

## Modules

### `wpgo.adapter`: host adapters

A `Site` describes one WordPress install: `alias`, `hostname`, `port` (default 22), `user`,
`wp_path`, `host_type`, `canonical_host`, `identity_file` and `tags`.

`for_site(site)` picks the adapter:

- a `host_type` of `"wpengine"` (any case) gives `WPEngineAdapter`;
- an empty `host_type` or `"auto"` looks at the hostname. A name ending in `.ssh.wpengine.net`
  gives `WPEngineAdapter`, and any other name gives `StandardAdapter`;
- any other `host_type`, including `"standard"`, gives `StandardAdapter`.

Every adapter has `name()`, `capabilities()` (an `AdapterCapabilities`), `exec`, `upload` and
`download`:

- `StandardAdapter` (`"standard"`): runs `cd '<wp_path>' && wp <args>`. Uploads stream the
  file through `cat > '<remote>'`. Its capabilities report SCP support, a persistent
  filesystem and no session limit.
- `WPEngineAdapter` (`"wpengine"`): runs in `wp_path`, or in `~/sites/<user>` when that is
  empty. The timeout is capped at 600 seconds. Uploads send the file base64-encoded through
  `base64 -d > '<remote>'`. Its capabilities report no SCP, no persistent filesystem and a
  600-second session limit.

Both adapters download with `cat '<remote>'` and write the output to the local path. A
non-zero exit status, or a failure to read or write a local file, raises `AdapterError`.

`shell_quote(s)` wraps a string in single quotes and escapes any quotes inside it, so
`it's` becomes `'it'\''s'`.

The adapters never open connections themselves. You pass in a client object with two
methods, and the adapter builds a `ClientConfig` (host, port, user, identity file, 30-second
connect timeout) for each call:

- `exec(config, canonical_host, command, timeout=None)`, which returns an `ExecResult`;
- `exec_with_stdin(config, canonical_host, command, stdin)`, which also returns an
  `ExecResult`.

### `wpgo.batch`: running a command across sites

`Executor().execute(sites, fn, options, cancel=None)` calls `fn(site)` for every site. It
returns one `SiteResult` per site, with `status` (`ResultStatus.OK`, `FAILED` or `SKIPPED`),
`detail`, `duration` in seconds and `error`:

- `fn` returns a detail string. If it raises, that site is marked `FAILED` and the exception
  text becomes the detail.
- `Options.safety_gate`, if set, is called as `safety_gate(tier, yes, ack_destructive)`
  before anything runs. If it raises, every site is `SKIPPED` with the error text as the
  detail.
- `Options.dry_run` marks every site `SKIPPED` with the detail `"dry-run"`, and `fn` is
  never called.
- With `concurrency` of 1, sites run in order. With a higher value, sites are grouped with
  `group_by_canonical_host`; the alias is used when there is no canonical host. Groups run in
  parallel and the sites within a group run one after another.
- Once the `threading.Event` passed as `cancel` is set, the remaining sites are `SKIPPED`
  with the detail `"context cancelled"`.

Progress is written to stderr as `[n/total] alias: status` by a `Progress` object. You can
send it to another stream with `Executor(progress_stream=...)`.

### `wpgo.report`: summaries

`Report(results)` counts `total`, `success`, `failed` and `skipped`. `has_failures()` is true
when any site failed. It can write its summary in two forms:

- `write_table(stream)` prints aligned `SITE / STATUS / DURATION / DETAILS` columns and a
  `Total | Success | Failed | Skipped` line. Details are cut to 60 characters.
- `write_json(stream)` writes indented JSON with `results` and `summary`.

The helpers `format_duration` and `truncate` are also public.

### `wpgo.cache`: SQLite result cache

`Cache(db_path)` opens or creates the database in WAL mode. It creates the parent directory
with mode 0700 and sets the file to mode 0600. It can be shared between threads and used as a
context manager.

- `set(CacheEntry(...))` stores an entry, replacing any with the same site and key.
- `get(site_alias, cache_key)` returns the entry, or `None` if it is missing or older than
  its `ttl_seconds`.
- `invalidate(site_alias, categories=None)`, `invalidate_category`, `invalidate_site` and
  `invalidate_all` delete entries.
- `prune()` deletes expired entries and returns how many it removed.
- `stats()` returns a `CacheStats` with total, expired, site count, counts per category and
  database size.
- `set_snapshot` and `get_snapshot` store one `SiteSnapshot` per site.

`make_cache_key(alias, command_key)` is the SHA-256 hex digest of `alias:command_key`.
`TTL_*` and `CATEGORY_*` constants give the default lifetimes and category names. Database
failures raise `CacheError`.

## What it does not do

- There is no SSH client. You supply the object that runs remote commands.
- There is no command-line program.
- There are no built-in safety-tier rules. Whether a command may run is decided by the
  `safety_gate` you pass in.

## Install

```
pip install .
```

## Example

```python
import sys
from wpgo.adapter import Site, for_site
from wpgo.batch import Executor, Options
from wpgo.report import Report

sites = [
    Site(alias="alpha", hostname="alpha.example.com", user="deploy", canonical_host="203.0.113.5:22"),
    Site(alias="gamma", hostname="gamma.ssh.wpengine.net", user="gamma", canonical_host="gamma:22"),
]

def run(site):
    return f"{for_site(site).name()} adapter"

results = Executor().execute(sites, run, Options(concurrency=2, command_name="plugin list"))
Report(results).write_table(sys.stdout)
```

Caching results:

```python
from datetime import datetime, timezone
from wpgo.cache import Cache, CacheEntry, TTL_PLUGINS, CATEGORY_PLUGINS, make_cache_key

with Cache("/tmp/wpgo/cache.db") as cache:
    key = make_cache_key("alpha", "plugin list:--format=json")
    cache.set(CacheEntry(
        site_alias="alpha",
        cache_key=key,
        command="plugin list --format=json",
        data="[]",
        fetched_at=datetime.now(timezone.utc),
        ttl_seconds=TTL_PLUGINS,
        category=CATEGORY_PLUGINS,
    ))
    print(cache.get("alpha", key))
```

## Tests

```
pip install .[test]
pytest
```