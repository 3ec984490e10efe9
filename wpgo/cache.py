"""SQLite-backed cache for wp-cli query results and per-site snapshots."""

from __future__ import annotations

import hashlib
import os
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

TTL_PLUGINS = 3600
TTL_THEMES = 3600
TTL_CORE = 86400
TTL_USERS = 21600
TTL_OPTIONS = 1800
TTL_SNAPSHOT = 14400

CATEGORY_PLUGINS = "plugins"
CATEGORY_THEMES = "themes"
CATEGORY_CORE = "core"
CATEGORY_USERS = "users"
CATEGORY_OPTIONS = "options"
CATEGORY_SNAPSHOT = "snapshot"

_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_RFC3339 = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)

_CREATE_CACHE_ENTRIES = """CREATE TABLE IF NOT EXISTS cache_entries (
    site_alias  TEXT NOT NULL,
    cache_key   TEXT NOT NULL,
    command     TEXT NOT NULL,
    data        TEXT NOT NULL,
    fetched_at  DATETIME NOT NULL DEFAULT (datetime('now')),
    ttl_seconds INTEGER NOT NULL,
    category    TEXT NOT NULL,
    PRIMARY KEY (site_alias, cache_key)
)"""

_CREATE_SITE_SNAPSHOTS = """CREATE TABLE IF NOT EXISTS site_snapshots (
    site_alias    TEXT PRIMARY KEY,
    core_version  TEXT,
    php_version   TEXT,
    plugin_count  INTEGER,
    theme_count   INTEGER,
    db_size       TEXT,
    last_checked  DATETIME
)"""

_CREATE_IDX_CATEGORY = (
    "CREATE INDEX IF NOT EXISTS idx_cache_category ON cache_entries(site_alias, category)"
)
_CREATE_IDX_EXPIRY = (
    "CREATE INDEX IF NOT EXISTS idx_cache_expiry ON cache_entries(fetched_at, ttl_seconds)"
)

_AGE = "(julianday('now') - julianday(fetched_at)) * 86400"

_GET_ENTRY = f"""SELECT site_alias, cache_key, command, data, fetched_at, ttl_seconds, category
    FROM cache_entries
    WHERE site_alias = ? AND cache_key = ? AND {_AGE} < ttl_seconds"""

_SET_ENTRY = """INSERT OR REPLACE INTO cache_entries
    (site_alias, cache_key, command, data, fetched_at, ttl_seconds, category)
    VALUES (?, ?, ?, ?, ?, ?, ?)"""

_INVALIDATE_SITE = "DELETE FROM cache_entries WHERE site_alias = ?"
_INVALIDATE_ALL = "DELETE FROM cache_entries"
_PRUNE = f"DELETE FROM cache_entries WHERE {_AGE} >= ttl_seconds"
_STATS_TOTAL = "SELECT COUNT(*) FROM cache_entries"
_STATS_EXPIRED = f"SELECT COUNT(*) FROM cache_entries WHERE {_AGE} >= ttl_seconds"
_STATS_SITES = "SELECT COUNT(DISTINCT site_alias) FROM cache_entries"
_STATS_CATEGORIES = "SELECT category, COUNT(*) FROM cache_entries GROUP BY category"

_GET_SNAPSHOT = """SELECT site_alias, core_version, php_version, plugin_count,
    theme_count, db_size, last_checked
    FROM site_snapshots WHERE site_alias = ?"""

_SET_SNAPSHOT = """INSERT OR REPLACE INTO site_snapshots
    (site_alias, core_version, php_version, plugin_count, theme_count, db_size, last_checked)
    VALUES (?, ?, ?, ?, ?, ?, ?)"""


class CacheError(Exception):
    """Raised when the cache database cannot be opened, read or written."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """One cached wp-cli query result."""

    site_alias: str
    cache_key: str
    command: str = ""
    data: str = ""
    fetched_at: datetime = field(default_factory=_utc_now)
    ttl_seconds: int = 0
    category: str = ""


@dataclass
class SiteSnapshot:
    """Aggregate state of a site for a quick overview."""

    site_alias: str
    core_version: str = ""
    php_version: str = ""
    plugin_count: int = 0
    theme_count: int = 0
    db_size: str = ""
    last_checked: datetime = field(default_factory=_utc_now)


@dataclass
class CacheStats:
    """Counts and size of the cache."""

    total_entries: int = 0
    expired_entries: int = 0
    site_count: int = 0
    db_size_bytes: int = 0
    categories: dict[str, int] = field(default_factory=dict)


def parse_time(s: str) -> datetime:
    """Parse a stored timestamp, either 'YYYY-MM-DD HH:MM:SS' (UTC) or RFC 3339."""
    try:
        return datetime.strptime(s, _DB_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        pass
    if isinstance(s, str) and _RFC3339.match(s):
        text = s[:-1] + "+00:00" if s.endswith("Z") else s
        head, sep, rest = text.partition(".")
        if sep:
            digits = re.match(r"\d+", rest).group(0)
            text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
    raise ValueError(f"unsupported time format: {s!r}")


def _format_time(t: datetime) -> str:
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc).strftime(_DB_TIME_FORMAT)


def make_cache_key(site_alias: str, command_cache_key: str) -> str:
    """SHA-256 hex digest of ``site_alias + ':' + command_cache_key``."""
    return hashlib.sha256(f"{site_alias}:{command_cache_key}".encode()).hexdigest()


def db_size_bytes(db_path: str | os.PathLike[str]) -> int:
    """Size of the database file in bytes, or 0 if it cannot be read."""
    try:
        return os.stat(db_path).st_size
    except OSError:
        return 0


class Cache:
    """Cache database, opened (and created if needed) at ``db_path``.

    The parent directory is created owner-only and the file is made
    readable and writable by its owner alone. Safe to share between threads.
    """

    def __init__(self, db_path: str | os.PathLike[str]) -> None:
        path = Path(db_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise CacheError(f"create cache dir: {exc}") from exc

        try:
            self._db = sqlite3.connect(
                str(path), check_same_thread=False, isolation_level=None, timeout=5.0
            )
        except sqlite3.Error as exc:
            raise CacheError(f"open cache db: {exc}") from exc
        self._lock = threading.Lock()

        try:
            self._setup(path)
        except CacheError:
            self._db.close()
            raise

    def _setup(self, path: Path) -> None:
        for pragma, label in (
            ("PRAGMA journal_mode=WAL", "set WAL mode"),
            ("PRAGMA busy_timeout=5000", "set busy timeout"),
        ):
            try:
                self._db.execute(pragma).fetchall()
            except sqlite3.Error as exc:
                raise CacheError(f"{label}: {exc}") from exc
        for stmt in (
            _CREATE_CACHE_ENTRIES,
            _CREATE_SITE_SNAPSHOTS,
            _CREATE_IDX_CATEGORY,
            _CREATE_IDX_EXPIRY,
        ):
            try:
                self._db.execute(stmt)
            except sqlite3.Error as exc:
                raise CacheError(f"migrate cache db: exec {stmt[:40]!r}: {exc}") from exc
        try:
            os.chmod(path, 0o600)
        except OSError as exc:
            raise CacheError(f"set cache db permissions: {exc}") from exc

    def __enter__(self) -> Cache:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()

    def _execute(self, label: str, query: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                return self._db.execute(query, params)
        except sqlite3.Error as exc:
            raise CacheError(f"{label}: {exc}") from exc

    def get(self, site_alias: str, cache_key: str) -> CacheEntry | None:
        """Return the entry if present and not expired, else None."""
        try:
            with self._lock:
                row = self._db.execute(_GET_ENTRY, (site_alias, cache_key)).fetchone()
        except sqlite3.Error as exc:
            raise CacheError(f"cache get: {exc}") from exc
        if row is None:
            return None
        alias, key, command, data, fetched_at, ttl, category = row
        try:
            fetched = parse_time(fetched_at)
        except ValueError as exc:
            raise CacheError(f"parse fetched_at: {exc}") from exc
        return CacheEntry(
            site_alias=alias,
            cache_key=key,
            command=command,
            data=data,
            fetched_at=fetched,
            ttl_seconds=ttl,
            category=category,
        )

    def set(self, entry: CacheEntry) -> None:
        """Store an entry, replacing any with the same site and key."""
        self._execute(
            "cache set",
            _SET_ENTRY,
            (
                entry.site_alias,
                entry.cache_key,
                entry.command,
                entry.data,
                _format_time(entry.fetched_at),
                entry.ttl_seconds,
                entry.category,
            ),
        )

    def invalidate(self, site_alias: str, categories: list[str] | None = None) -> None:
        """Remove a site's entries in the given categories, or all of them if none given."""
        if not categories:
            self._execute("cache invalidate site", _INVALIDATE_SITE, (site_alias,))
            return
        placeholders = ", ".join("?" for _ in categories)
        query = (
            f"DELETE FROM cache_entries WHERE site_alias = ? AND category IN ({placeholders})"
        )
        self._execute("cache invalidate categories", query, (site_alias, *categories))

    def invalidate_category(self, site_alias: str, category: str) -> None:
        """Remove a site's entries in one category."""
        self.invalidate(site_alias, [category])

    def invalidate_site(self, site_alias: str) -> None:
        """Remove every entry for a site."""
        self.invalidate(site_alias, None)

    def invalidate_all(self) -> None:
        """Remove every entry."""
        self._execute("cache invalidate all", _INVALIDATE_ALL)

    def stats(self) -> CacheStats:
        """Entry counts, expired counts, distinct sites, per-category counts and size."""
        stats = CacheStats()
        try:
            with self._lock:
                stats.total_entries = self._db.execute(_STATS_TOTAL).fetchone()[0]
                stats.expired_entries = self._db.execute(_STATS_EXPIRED).fetchone()[0]
                stats.site_count = self._db.execute(_STATS_SITES).fetchone()[0]
                stats.categories = dict(self._db.execute(_STATS_CATEGORIES).fetchall())
        except sqlite3.Error as exc:
            raise CacheError(f"stats: {exc}") from exc
        try:
            with self._lock:
                page_count = self._db.execute("PRAGMA page_count").fetchone()[0]
                page_size = self._db.execute("PRAGMA page_size").fetchone()[0]
            stats.db_size_bytes = page_count * page_size
        except sqlite3.Error:
            pass
        return stats

    def prune(self) -> int:
        """Delete expired entries and return how many were removed."""
        cursor = self._execute("cache prune", _PRUNE)
        return max(cursor.rowcount, 0)

    def get_snapshot(self, site_alias: str) -> SiteSnapshot | None:
        """Return the site's snapshot, or None if there is none."""
        try:
            with self._lock:
                row = self._db.execute(_GET_SNAPSHOT, (site_alias,)).fetchone()
        except sqlite3.Error as exc:
            raise CacheError(f"get snapshot: {exc}") from exc
        if row is None:
            return None
        alias, core, php, plugins, themes, db_size, last_checked = row
        try:
            checked = parse_time(last_checked)
        except ValueError as exc:
            raise CacheError(f"parse last_checked: {exc}") from exc
        return SiteSnapshot(
            site_alias=alias,
            core_version=core or "",
            php_version=php or "",
            plugin_count=plugins or 0,
            theme_count=themes or 0,
            db_size=db_size or "",
            last_checked=checked,
        )

    def set_snapshot(self, snapshot: SiteSnapshot) -> None:
        """Store a site snapshot, replacing any earlier one."""
        self._execute(
            "set snapshot",
            _SET_SNAPSHOT,
            (
                snapshot.site_alias,
                snapshot.core_version,
                snapshot.php_version,
                snapshot.plugin_count,
                snapshot.theme_count,
                snapshot.db_size,
                _format_time(snapshot.last_checked),
            ),
        )