from __future__ import annotations

import logging
import os
import socket
import struct
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, BinaryIO, Iterator, Protocol, Union

from filevault.core.config import settings
from filevault.core.errors import ScanEngineUnavailable

_LOG = logging.getLogger("filevault.scan")

ScanInput = Union[bytes, str, os.PathLike]

ALWAYS_SCAN_MIME_TYPES = {
    "application/zip",
    "application/x-zip-compressed",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "application/x-tar",
    "application/gzip",
    "application/x-gzip",
    "application/x-executable",
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-winexe",
}

SKIP_SCAN_MIME_TYPES = {
    "text/plain",
    "text/csv",
    "application/json",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
}

EXECUTABLE_EXTENSIONS = {".exe", ".scr", ".bat", ".cmd", ".com", ".pif", ".vbs", ".js", ".msi", ".ps1", ".dll"}

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ScanVerdict:
    infected: bool
    signatures: list[str] = field(default_factory=list)
    engine: str = "clamav"
    engine_version: str = "unknown"

    @property
    def summary(self) -> str:
        if not self.infected:
            return f"clean ({self.engine} {self.engine_version})"
        return "infected: " + ", ".join(self.signatures or ["MALWARE_FOUND"])


class MalwareScanEngine(Protocol):
    def scan(self, data: ScanInput, filename: str, mime_type: str) -> ScanVerdict:
        ...


def _file_ext(file_name: str) -> str:
    _, ext = os.path.splitext(str(file_name or "").strip().lower())
    return ext


def should_scan(mime_type: str, filename: str) -> bool:
    normalized = str(mime_type or "").strip().lower()
    if normalized in ALWAYS_SCAN_MIME_TYPES or _file_ext(filename) in EXECUTABLE_EXTENSIONS:
        return True
    if normalized in SKIP_SCAN_MIME_TYPES:
        return False
    return True


@contextmanager
def materialized(data: bytes, filename: str = "") -> Iterator[str]:
    """Write ``data`` to a temporary file and remove it on every exit path."""
    _, ext = os.path.splitext(str(filename or ""))
    directory = str(settings.SCAN_TEMP_DIR or "").strip() or None
    fd, path = tempfile.mkstemp(prefix=f"scan_{uuid.uuid4().hex}_", suffix=ext[:16], dir=directory)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        # clamd runs under its own user and must be able to read the file.
        os.chmod(path, 0o644)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


def _parse_clamd_reply(raw: bytes) -> tuple[bool, list[str]]:
    text = raw.decode("utf-8", errors="replace").strip().strip("\x00")
    if " FOUND" in text:
        signature = text.split(":", 1)[-1].replace("FOUND", "").strip() or "MALWARE_FOUND"
        return True, [signature]
    if text.endswith("OK") or " OK" in text:
        return False, []
    raise ScanEngineUnavailable(f"Unexpected clamd reply: {text or '-'}")


class ClamdScanEngine:
    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        timeout: float | None = None,
        mode: str | None = None,
    ):
        self.host = str(host or settings.CLAMAV_HOST or "clamav").strip()
        self.port = int(port or settings.CLAMAV_PORT or 3310)
        self.timeout = float(timeout or settings.SCAN_TIMEOUT_SECONDS or 30)
        self.mode = str(mode or settings.CLAMAV_MODE or "instream").strip().lower()
        self.max_bytes = max(1, int(settings.SCAN_MAX_MB)) * 1024 * 1024
        self._version: str | None = None

    def _connect(self) -> socket.socket:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise ScanEngineUnavailable(f"clamd unreachable at {self.host}:{self.port}: {exc}") from exc
        sock.settimeout(self.timeout)
        return sock

    @staticmethod
    def _read_reply(sock: socket.socket) -> bytes:
        response = b""
        while True:
            part = sock.recv(4096)
            if not part:
                break
            response += part
        return response

    def version(self) -> str:
        try:
            with self._connect() as sock:
                sock.sendall(b"zVERSION\0")
                reply = self._read_reply(sock)
        except ScanEngineUnavailable:
            return "unknown"
        except OSError:
            return "unknown"
        return reply.decode("utf-8", errors="replace").strip().strip("\x00") or "unknown"

    def cached_version(self) -> str:
        if self._version is None:
            version = self.version()
            if version == "unknown":
                return version
            self._version = version
        return self._version

    def _instream(self, stream: BinaryIO) -> bytes:
        total = 0
        with self._connect() as sock:
            sock.sendall(b"zINSTREAM\0")
            while True:
                chunk = stream.read(_CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > self.max_bytes:
                    raise ScanEngineUnavailable("File exceeds the scannable size limit")
                sock.sendall(struct.pack(">I", len(chunk)))
                sock.sendall(chunk)
            sock.sendall(struct.pack(">I", 0))
            return self._read_reply(sock)

    def _scan_path_command(self, path: str) -> bytes:
        with self._connect() as sock:
            sock.sendall(b"zSCAN " + os.fsencode(os.path.abspath(path)) + b"\0")
            return self._read_reply(sock)

    def _scan_path(self, path: str) -> bytes:
        if self.mode == "scan":
            return self._scan_path_command(path)
        with open(path, "rb") as handle:
            return self._instream(handle)

    def scan(self, data: ScanInput, filename: str, mime_type: str) -> ScanVerdict:
        if _file_ext(filename) in EXECUTABLE_EXTENSIONS:
            _LOG.warning("scanning executable-like file name=%s mime=%s", filename, mime_type)
        try:
            if isinstance(data, (bytes, bytearray)):
                if not data:
                    raise ScanEngineUnavailable("Cannot scan an empty buffer")
                with materialized(bytes(data), filename) as path:
                    reply = self._scan_path(path)
            else:
                path = os.fspath(data)
                if os.path.getsize(path) <= 0:
                    raise ScanEngineUnavailable("Cannot scan an empty file")
                reply = self._scan_path(path)
        except socket.timeout:
            raise
        except OSError as exc:
            raise ScanEngineUnavailable(f"clamd scan failed: {exc}") from exc
        infected, signatures = _parse_clamd_reply(reply)
        return ScanVerdict(infected=infected, signatures=signatures, engine="clamav", engine_version=self.cached_version())


class DisabledScanEngine:
    def scan(self, data: ScanInput, filename: str, mime_type: str) -> ScanVerdict:
        raise ScanEngineUnavailable("Malware scanning is disabled")


@lru_cache(maxsize=1)
def get_scan_engine() -> MalwareScanEngine:
    if not settings.MALWARE_SCAN_ENABLED:
        _LOG.warning("malware scanning disabled; scanned files will be marked error")
        return DisabledScanEngine()
    return ClamdScanEngine()


def scanner_health() -> dict[str, Any]:
    engine = get_scan_engine()
    if not settings.MALWARE_SCAN_ENABLED or isinstance(engine, DisabledScanEngine):
        return {
            "component": "malware_scan",
            "status": "disabled",
            "enabled": False,
            "engine": None,
            "version": None,
            "checks": {"daemon_reachable": False},
            "issues": ["MALWARE_SCAN_ENABLED is off: scanned files are recorded as error"],
        }
    version = engine.version() if hasattr(engine, "version") else "unknown"
    reachable = version != "unknown"
    issues: list[str] = []
    if not reachable:
        issues.append(f"clamd unreachable at {getattr(engine, 'host', '-')}:{getattr(engine, 'port', '-')}")
    return {
        "component": "malware_scan",
        "status": "ok" if reachable else "degraded",
        "enabled": True,
        "engine": "clamav",
        "version": version if reachable else None,
        "checks": {"daemon_reachable": reachable},
        "issues": issues,
    }
