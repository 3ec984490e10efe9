"""Summaries of batch results as a text table or JSON."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any, TextIO

from wpgo.batch import ResultStatus, SiteResult

_DETAIL_WIDTH = 60


def format_duration(seconds: float) -> str:
    """Render a duration in seconds with one decimal place."""
    if seconds < 0.01:
        return "0.0s"
    return f"{seconds:.1f}s"


def truncate(s: str, max_len: int) -> str:
    """Flatten newlines and shorten to ``max_len``, ending in '...' when cut."""
    s = s.replace("\n", " ")
    if len(s) <= max_len:
        return s
    if max_len < 4:
        return s[:max_len]
    return s[: max_len - 3] + "..."


def _json_number(value: float) -> Any:
    return int(value) if value.is_integer() else value


class Report:
    """Counts and renders the results of a batch run."""

    def __init__(self, results: Sequence[SiteResult]) -> None:
        self.results = list(results)
        self.total = len(self.results)
        self.success = sum(1 for r in self.results if r.status is ResultStatus.OK)
        self.failed = sum(1 for r in self.results if r.status is ResultStatus.FAILED)
        self.skipped = sum(1 for r in self.results if r.status is ResultStatus.SKIPPED)

    def has_failures(self) -> bool:
        """True if any site failed."""
        return self.failed > 0

    def write_table(self, stream: TextIO) -> None:
        """Write an aligned table followed by a summary line."""
        width = max([len("SITE"), *(len(r.site.alias) for r in self.results)])
        stream.write(f"{'SITE':<{width}}  {'STATUS':<7}  {'DURATION':<10}  DETAILS\n")
        for r in self.results:
            stream.write(
                f"{r.site.alias:<{width}}  {str(r.status):<7}  "
                f"{format_duration(r.duration):<10}  {truncate(r.detail, _DETAIL_WIDTH)}\n"
            )
        stream.write("---\n")
        stream.write(
            f"Total: {self.total} | Success: {self.success} | "
            f"Failed: {self.failed} | Skipped: {self.skipped}\n"
        )

    def write_json(self, stream: TextIO) -> None:
        """Write the results and summary as indented JSON."""
        items = []
        for r in self.results:
            item: dict[str, Any] = {
                "site": r.site.alias,
                "status": str(r.status),
                "duration_seconds": _json_number(float(r.duration)),
                "detail": r.detail,
            }
            if r.error is not None:
                item["error"] = str(r.error)
            items.append(item)
        document = {
            "results": items,
            "summary": {
                "total": self.total,
                "success": self.success,
                "failed": self.failed,
                "skipped": self.skipped,
            },
        }
        text = json.dumps(document, indent=2, ensure_ascii=False)
        text = text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
        stream.write(text + "\n")