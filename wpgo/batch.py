"""Run a command across many sites with safety gates and per-host ordering."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, TextIO

from wpgo.adapter import Site

CommandFunc = Callable[[Site], str]
SafetyGate = Callable[[Any, bool, bool], None]


class ResultStatus(Enum):
    """Outcome of a command on a single site."""

    OK = 0
    FAILED = 1
    SKIPPED = 2

    def __str__(self) -> str:
        return self.name


@dataclass
class SiteResult:
    """What happened when a command ran on one site. Duration is in seconds."""

    site: Site
    status: ResultStatus
    detail: str = ""
    duration: float = 0.0
    error: BaseException | None = None


@dataclass
class Options:
    """Settings for a batch run.

    ``safety_gate`` is called with ``(tier, yes, ack_destructive)`` before
    anything runs; if it raises, every site is skipped with the error's text.
    """

    concurrency: int = 1
    yes: bool = False
    ack_destructive: bool = False
    dry_run: bool = False
    tier: Any = None
    command_name: str = ""
    safety_gate: SafetyGate | None = None


class Progress:
    """Live progress line on stderr, kept apart from data on stdout."""

    def __init__(self, total: int, command_name: str, stream: TextIO | None = None) -> None:
        self.total = total
        self.command_name = command_name
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def update(self, current: int, site_alias: str, status: str) -> None:
        """Redraw the line as ``[current/total] alias: status``."""
        with self._lock:
            self.stream.write(f"\r\033[K[{current}/{self.total}] {site_alias}: {status}")
            self.stream.flush()

    def done(self) -> None:
        """Clear the progress line."""
        with self._lock:
            self.stream.write("\r\033[K")
            self.stream.flush()


def group_by_canonical_host(sites: Iterable[Site]) -> dict[str, list[Site]]:
    """Bucket sites by canonical host, falling back to the alias."""
    groups: dict[str, list[Site]] = {}
    for site in sites:
        groups.setdefault(site.canonical_host or site.alias, []).append(site)
    return groups


def _cancelled(cancel: threading.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _run_one(fn: CommandFunc, site: Site) -> SiteResult:
    start = time.perf_counter()
    try:
        detail = fn(site)
    except Exception as exc:
        return SiteResult(
            site=site,
            status=ResultStatus.FAILED,
            detail=str(exc),
            duration=time.perf_counter() - start,
            error=exc,
        )
    return SiteResult(
        site=site,
        status=ResultStatus.OK,
        detail=detail,
        duration=time.perf_counter() - start,
    )


def _cancelled_result(site: Site) -> SiteResult:
    return SiteResult(site=site, status=ResultStatus.SKIPPED, detail="context cancelled")


class Executor:
    """Runs a command across sites.

    Sites sharing a canonical host always run one after another; different
    hosts may run in parallel up to the configured concurrency.
    """

    def __init__(self, progress_stream: TextIO | None = None) -> None:
        self._progress_stream = progress_stream

    def execute(
        self,
        sites: Sequence[Site],
        fn: CommandFunc | None,
        options: Options,
        cancel: threading.Event | None = None,
    ) -> list[SiteResult]:
        """Run ``fn`` on every site and return one result per site."""
        if not sites:
            return []

        if options.safety_gate is not None:
            try:
                options.safety_gate(options.tier, options.yes, options.ack_destructive)
            except Exception as exc:
                return [
                    SiteResult(site=site, status=ResultStatus.SKIPPED, detail=str(exc))
                    for site in sites
                ]

        progress = Progress(len(sites), options.command_name, self._progress_stream)

        if options.dry_run:
            results = []
            for n, site in enumerate(sites, start=1):
                progress.update(n, site.alias, "dry-run (skipped)")
                results.append(SiteResult(site=site, status=ResultStatus.SKIPPED, detail="dry-run"))
            progress.done()
            return results

        if fn is None:
            raise ValueError("a command function is required")

        concurrency = max(options.concurrency, 1)
        if concurrency == 1:
            return self._execute_sequential(sites, fn, progress, cancel)
        return self._execute_parallel(
            group_by_canonical_host(sites), fn, concurrency, progress, cancel
        )

    @staticmethod
    def _execute_sequential(
        sites: Sequence[Site],
        fn: CommandFunc,
        progress: Progress,
        cancel: threading.Event | None,
    ) -> list[SiteResult]:
        results = []
        for n, site in enumerate(sites, start=1):
            if _cancelled(cancel):
                results.append(_cancelled_result(site))
                continue
            progress.update(n, site.alias, f"running {progress.command_name}...")
            results.append(_run_one(fn, site))
        progress.done()
        return results

    @staticmethod
    def _execute_parallel(
        host_groups: dict[str, list[Site]],
        fn: CommandFunc,
        concurrency: int,
        progress: Progress,
        cancel: threading.Event | None,
    ) -> list[SiteResult]:
        lock = threading.Lock()
        results: list[SiteResult] = []
        completed = 0

        def run_group(group: list[Site]) -> None:
            nonlocal completed
            for site in group:
                if _cancelled(cancel):
                    with lock:
                        completed += 1
                        results.append(_cancelled_result(site))
                    continue
                with lock:
                    completed += 1
                    n = completed
                progress.update(n, site.alias, f"running {progress.command_name}...")
                result = _run_one(fn, site)
                with lock:
                    results.append(result)

        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            futures = [pool.submit(run_group, host_groups[h]) for h in sorted(host_groups)]
            for future in futures:
                future.result()

        progress.done()
        return results