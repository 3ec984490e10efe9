"""Host adapters: how wp-cli commands and file transfers run on a site's host."""

from __future__ import annotations

import base64
import io
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Protocol

CONNECT_TIMEOUT = 30.0
WPENGINE_SESSION_LIMIT = 600.0


@dataclass
class Site:
    """A managed WordPress site."""

    alias: str = ""
    hostname: str = ""
    port: int = 22
    user: str = ""
    wp_path: str = ""
    host_type: str = ""
    canonical_host: str = ""
    identity_file: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a remote command."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings handed to the SSH client."""

    host: str
    port: int
    user: str
    identity_file: str = ""
    connect_timeout: float = CONNECT_TIMEOUT


@dataclass(frozen=True)
class AdapterCapabilities:
    """What a host adapter supports. A session limit of 0 means no limit."""

    supports_scp: bool
    persistent_fs: bool
    max_session_duration: float = 0.0


class AdapterError(Exception):
    """Raised when a command or transfer through an adapter fails."""


class _Client(Protocol):
    def exec(
        self,
        config: ClientConfig,
        canonical_host: str,
        command: str,
        timeout: float | None = None,
    ) -> ExecResult: ...

    def exec_with_stdin(
        self,
        config: ClientConfig,
        canonical_host: str,
        command: str,
        stdin: BinaryIO,
    ) -> ExecResult: ...


def shell_quote(s: str) -> str:
    """Wrap a string in single quotes, escaping embedded single quotes."""
    return "'" + s.replace("'", "'\\''") + "'"


def _client_config(site: Site) -> ClientConfig:
    return ClientConfig(
        host=site.hostname,
        port=site.port,
        user=site.user,
        identity_file=site.identity_file,
        connect_timeout=CONNECT_TIMEOUT,
    )


def _write_local(local_path: str | os.PathLike[str], stdout: str | bytes) -> None:
    data = stdout.encode("utf-8", "surrogateescape") if isinstance(stdout, str) else stdout
    try:
        fd = os.open(local_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
    except OSError as exc:
        raise AdapterError(f"write local file: {exc}") from exc


def _check(result: ExecResult, action: str) -> None:
    if result.exit_code != 0:
        raise AdapterError(f"{action} failed (exit {result.exit_code}): {result.stderr}")


class Adapter(ABC):
    """How commands and file transfers are carried out on a host."""

    @abstractmethod
    def name(self) -> str:
        """The adapter identifier."""

    @abstractmethod
    def capabilities(self) -> AdapterCapabilities:
        """What this adapter supports."""

    @abstractmethod
    def exec(
        self, client: _Client, site: Site, wp_cmd: str, timeout: float | None = None
    ) -> ExecResult:
        """Run wp-cli arguments on the remote site."""

    @abstractmethod
    def upload(
        self,
        client: _Client,
        site: Site,
        local_path: str | os.PathLike[str],
        remote_path: str,
    ) -> None:
        """Transfer a local file to the remote host."""

    def download(
        self,
        client: _Client,
        site: Site,
        remote_path: str,
        local_path: str | os.PathLike[str],
    ) -> None:
        """Stream a remote file to local disk."""
        cmd = f"cat {shell_quote(remote_path)}"
        try:
            result = client.exec(_client_config(site), site.canonical_host, cmd)
        except AdapterError:
            raise
        except Exception as exc:
            raise AdapterError(f"{self._download_label}: {exc}") from exc
        _check(result, "download")
        _write_local(local_path, result.stdout)

    _download_label = "download"


class StandardAdapter(Adapter):
    """cPanel, VPS and other hosts with a plain SSH shell."""

    def name(self) -> str:
        return "standard"

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(supports_scp=True, persistent_fs=True, max_session_duration=0.0)

    def exec(
        self, client: _Client, site: Site, wp_cmd: str, timeout: float | None = None
    ) -> ExecResult:
        cmd = f"cd {shell_quote(site.wp_path)} && wp {wp_cmd}"
        return client.exec(_client_config(site), site.canonical_host, cmd, timeout=timeout)

    def upload(
        self,
        client: _Client,
        site: Site,
        local_path: str | os.PathLike[str],
        remote_path: str,
    ) -> None:
        try:
            fh = open(local_path, "rb")
        except OSError as exc:
            raise AdapterError(f"open local file: {exc}") from exc
        cmd = f"cat > {shell_quote(remote_path)}"
        with fh:
            try:
                result = client.exec_with_stdin(_client_config(site), site.canonical_host, cmd, fh)
            except Exception as exc:
                raise AdapterError(f"upload: {exc}") from exc
        _check(result, "upload")

    def download(
        self,
        client: _Client,
        site: Site,
        remote_path: str,
        local_path: str | os.PathLike[str],
    ) -> None:
        super().download(client, site, remote_path, local_path)


class WPEngineAdapter(Adapter):
    """WP Engine's ephemeral SSH environment: no SCP, ten-minute sessions."""

    _download_label = "download from wpengine"

    def name(self) -> str:
        return "wpengine"

    def capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_scp=False,
            persistent_fs=False,
            max_session_duration=WPENGINE_SESSION_LIMIT,
        )

    def exec(
        self, client: _Client, site: Site, wp_cmd: str, timeout: float | None = None
    ) -> ExecResult:
        wp_path = site.wp_path or f"~/sites/{site.user}"
        cmd = f"cd {shell_quote(wp_path)} && wp {wp_cmd}"
        limit = WPENGINE_SESSION_LIMIT if timeout is None else min(timeout, WPENGINE_SESSION_LIMIT)
        return client.exec(_client_config(site), site.canonical_host, cmd, timeout=limit)

    def upload(
        self,
        client: _Client,
        site: Site,
        local_path: str | os.PathLike[str],
        remote_path: str,
    ) -> None:
        try:
            data = Path(local_path).read_bytes()
        except OSError as exc:
            raise AdapterError(f"read local file: {exc}") from exc
        encoded = io.BytesIO(base64.b64encode(data))
        cmd = f"base64 -d > {shell_quote(remote_path)}"
        try:
            result = client.exec_with_stdin(_client_config(site), site.canonical_host, cmd, encoded)
        except Exception as exc:
            raise AdapterError(f"upload to wpengine: {exc}") from exc
        _check(result, "upload")

    def download(
        self,
        client: _Client,
        site: Site,
        remote_path: str,
        local_path: str | os.PathLike[str],
    ) -> None:
        super().download(client, site, remote_path, local_path)


def _detect_from_hostname(hostname: str) -> Adapter:
    if hostname.lower().endswith(".ssh.wpengine.net"):
        return WPEngineAdapter()
    return StandardAdapter()


def for_site(site: Site) -> Adapter:
    """Choose the adapter from the site's host type, or detect it from the hostname."""
    host_type = site.host_type.lower()
    if host_type == "wpengine":
        return WPEngineAdapter()
    if host_type in ("", "auto"):
        return _detect_from_hostname(site.hostname)
    return StandardAdapter()