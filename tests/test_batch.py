import io
import threading
import time

import pytest

from wpgo.adapter import Site
from wpgo.batch import (
    Executor,
    Options,
    Progress,
    ResultStatus,
    group_by_canonical_host,
)

READ = "read"
DESTRUCTIVE = "destructive"


class GateError(Exception):
    pass


def gate(tier, yes, ack_destructive):
    if tier == DESTRUCTIVE:
        if not yes:
            raise GateError("destructive command requires --yes")
        if not ack_destructive:
            raise GateError("destructive command requires --ack-destructive")


def make_sites(n, canonical_host):
    return [
        Site(
            alias=f"site{i}",
            hostname="192.0.2.10",
            port=37980,
            user=f"user{i}",
            wp_path="~/public_html",
            host_type="standard",
            canonical_host=canonical_host,
        )
        for i in range(1, n + 1)
    ]


def make_mixed_sites():
    return [
        Site(alias="site-a", canonical_host="1.2.3.4:22"),
        Site(alias="site-b", canonical_host="1.2.3.4:22"),
        Site(alias="site-c", canonical_host="5.6.7.8:22"),
    ]


def opts(**kwargs):
    kwargs.setdefault("tier", READ)
    kwargs.setdefault("command_name", "test")
    kwargs.setdefault("safety_gate", gate)
    return Options(**kwargs)


@pytest.fixture
def executor():
    return Executor(progress_stream=io.StringIO())


def test_sequential_all_ok(executor):
    results = executor.execute(
        make_sites(3, "1.2.3.4:22"), lambda s: f"done {s.alias}", opts(concurrency=1)
    )
    assert len(results) == 3
    for i, r in enumerate(results, start=1):
        assert r.status is ResultStatus.OK
        assert r.detail == f"done site{i}"
        assert r.duration > 0


def test_sequential_with_failures(executor):
    def fn(site):
        if site.alias == "site2":
            raise ConnectionError("connection refused")
        return "ok"

    results = executor.execute(make_sites(3, "1.2.3.4:22"), fn, opts(concurrency=1))
    assert [r.status for r in results] == [
        ResultStatus.OK,
        ResultStatus.FAILED,
        ResultStatus.OK,
    ]
    assert isinstance(results[1].error, ConnectionError)
    assert results[1].detail == "connection refused"


def test_dry_run(executor):
    called = []
    results = executor.execute(
        make_sites(3, "1.2.3.4:22"),
        lambda s: called.append(s) or "should not run",
        opts(dry_run=True),
    )
    assert called == []
    assert all(r.status is ResultStatus.SKIPPED for r in results)
    assert all(r.detail == "dry-run" for r in results)


def test_safety_gate_destructive_blocked(executor):
    called = []
    results = executor.execute(
        make_sites(2, "1.2.3.4:22"),
        lambda s: called.append(s) or "",
        opts(tier=DESTRUCTIVE, yes=False, command_name="db reset"),
    )
    assert called == []
    assert [r.status for r in results] == [ResultStatus.SKIPPED] * 2
    assert results[0].detail == "destructive command requires --yes"


def test_safety_gate_destructive_with_yes_only(executor):
    called = []
    results = executor.execute(
        make_sites(2, "1.2.3.4:22"),
        lambda s: called.append(s) or "",
        opts(tier=DESTRUCTIVE, yes=True, ack_destructive=False, command_name="db reset"),
    )
    assert called == []
    assert [r.status for r in results] == [ResultStatus.SKIPPED] * 2


def test_safety_gate_destructive_allowed(executor):
    results = executor.execute(
        make_sites(2, "1.2.3.4:22"),
        lambda s: "deleted",
        opts(tier=DESTRUCTIVE, yes=True, ack_destructive=True, command_name="db reset"),
    )
    assert [r.status for r in results] == [ResultStatus.OK] * 2
    assert [r.detail for r in results] == ["deleted", "deleted"]


def test_context_cancellation(executor):
    cancel = threading.Event()
    count = 0

    def fn(site):
        nonlocal count
        count += 1
        if count >= 2:
            cancel.set()
        return "ok"

    results = executor.execute(make_sites(5, "1.2.3.4:22"), fn, opts(concurrency=1), cancel)
    statuses = [r.status for r in results]
    assert len(results) == 5
    assert statuses.count(ResultStatus.OK) >= 2
    assert statuses.count(ResultStatus.SKIPPED) > 0
    assert results[-1].detail == "context cancelled"


def test_parallel(executor):
    def fn(site):
        time.sleep(0.05)
        return "ok"

    start = time.perf_counter()
    results = executor.execute(make_mixed_sites(), fn, opts(concurrency=2))
    elapsed = time.perf_counter() - start

    assert len(results) == 3
    assert all(r.status is ResultStatus.OK for r in results)
    assert elapsed < 0.3


def test_parallel_keeps_same_host_order(executor):
    results = executor.execute(make_mixed_sites(), lambda s: "ok", opts(concurrency=3))
    same_host = [r.site.alias for r in results if r.site.canonical_host == "1.2.3.4:22"]
    assert same_host == ["site-a", "site-b"]


def test_same_host_sequential(executor):
    order = []
    running = []
    overlap = []
    lock = threading.Lock()

    def fn(site):
        with lock:
            if running:
                overlap.append(site.alias)
            running.append(site.alias)
        time.sleep(0.01)
        with lock:
            running.remove(site.alias)
        order.append(site.alias)
        return "ok"

    results = executor.execute(make_sites(3, "1.2.3.4:22"), fn, opts(concurrency=5))
    assert len(results) == 3
    assert order == ["site1", "site2", "site3"]
    assert overlap == []


def test_empty_sites(executor):
    assert executor.execute([], None, opts(concurrency=1)) == []


def test_group_by_canonical_host():
    groups = group_by_canonical_host(make_mixed_sites())
    assert len(groups) == 2
    assert [s.alias for s in groups["1.2.3.4:22"]] == ["site-a", "site-b"]
    assert [s.alias for s in groups["5.6.7.8:22"]] == ["site-c"]


def test_group_by_canonical_host_fallback_alias():
    groups = group_by_canonical_host([Site(alias="nohost", canonical_host="")])
    assert list(groups) == ["nohost"]


def test_progress_new():
    p = Progress(10, "plugin list")
    assert p.total == 10
    assert p.command_name == "plugin list"


def test_progress_update_and_done():
    stream = io.StringIO()
    p = Progress(30, "plugin list", stream)
    p.update(3, "sitealpha", "running plugin list...")
    p.done()
    assert stream.getvalue() == (
        "\r\x1b[K[3/30] sitealpha: running plugin list...\r\x1b[K"
    )


def test_executor_reports_progress():
    stream = io.StringIO()
    Executor(progress_stream=stream).execute(
        make_sites(1, "h"), lambda s: "ok", opts(command_name="plugin list")
    )
    assert "[1/1] site1: running plugin list..." in stream.getvalue()


@pytest.mark.parametrize(
    "status,text",
    [(ResultStatus.OK, "OK"), (ResultStatus.FAILED, "FAILED"), (ResultStatus.SKIPPED, "SKIPPED")],
)
def test_result_status_str(status, text):
    assert str(status) == text


def test_result_status_unknown_value():
    with pytest.raises(ValueError):
        ResultStatus(99)