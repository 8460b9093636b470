"""Channel transports: the wire-level half of the ledger.

A transport speaks to one append-only, server-ordered broadcast service.  It
knows how to create and describe channels, how to submit raw bytes and wait
for an ordering acknowledgement, and how to stream deliveries back in
sequence order.  Retrying is *not* its job; transports classify each failure
as transient or permanent via :exc:`~audited_db.errors.LedgerSubmissionError`
and the :class:`~audited_db.ledger.client.LedgerClient` decides what to do.

Two implementations ship:

:class:`FileChannelTransport`
    One JSONL file per channel on a local or shared filesystem.  The writer
    holds an exclusive ``fcntl`` lock while it reads the last sequence number
    and appends the next line, so sequence assignment is total across every
    process that shares the directory.  Each line embeds a SHA-256 checksum of
    its own body for corruption detection::

        {"sequence": 7, "consensus_timestamp": 1706745600123,
         "message": "<base64 payload>", "_checksum": "sha256:..."}

    POSIX-only (``fcntl``).

:class:`HttpChannelTransport`
    A mirror-node style REST service, reached with ``requests``::

        POST /api/v1/channels                        create
        GET  /api/v1/channels/{id}                   describe
        POST /api/v1/channels/{id}/messages          submit {"message": b64}
        GET  /api/v1/channels/{id}/messages          list, ?sequencenumber=gte:N

    Connection errors, timeouts, HTTP 429 and 5xx are transient; every other
    4xx (unknown channel, insufficient balance, bad credentials) is permanent.
"""

from __future__ import annotations

import base64
import fcntl
import hashlib
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any, BinaryIO

import requests

from audited_db.config import LedgerSettings
from audited_db.errors import ConfigurationError, LedgerError, LedgerSubmissionError
from audited_db.ledger.messages import ChannelInfo, ChannelMessage, SubmitResult, now_ms

logger = logging.getLogger(__name__)

#: Initial chunk read from the end of a channel file when looking for its
#: last line.  Doubled until a full line is found.
_TAIL_CHUNK_BYTES = 16_384

#: Page size requested from the HTTP service while streaming.
_HTTP_PAGE_LIMIT = 100


class LedgerTransport(ABC):
    """Interface every channel transport implements."""

    @abstractmethod
    def create_channel(self, name: str, memo: str | None = None) -> ChannelInfo:
        """Create a new, empty ordered channel."""

    @abstractmethod
    def get_channel_info(self, channel_id: str) -> ChannelInfo:
        """Describe an existing channel, including its current sequence number."""

    @abstractmethod
    def submit(self, channel_id: str, payload: bytes) -> SubmitResult:
        """Append *payload* and block until the channel acknowledges its order."""

    @abstractmethod
    def subscribe(
        self,
        channel_id: str,
        from_sequence: int,
        *,
        stop: threading.Event | None = None,
        follow: bool = True,
    ) -> Iterator[ChannelMessage]:
        """Yield deliveries with ``sequence >= from_sequence`` in order.

        With ``follow=True`` the iterator tails the channel until *stop* is
        set; with ``follow=False`` it ends once it has caught up.
        """

    def close(self) -> None:
        """Release transport resources.  Safe to call more than once."""


# =============================================================================
# FILE CHANNEL
# =============================================================================


class FileChannelTransport(LedgerTransport):
    """Channel transport backed by one JSONL file per channel.

    Args:
        root: Directory holding ``<channel_id>.jsonl`` and
            ``<channel_id>.channel.json`` files.  Created on demand.
        poll_interval: Seconds between end-of-file checks while following.
    """

    def __init__(self, root: Path | str, *, poll_interval: float = 0.5) -> None:
        self.root = Path(root)
        self.poll_interval = poll_interval

    # ── Channel management ────────────────────────────────────────────────────

    def create_channel(self, name: str, memo: str | None = None) -> ChannelInfo:
        channel_id = uuid.uuid4().hex
        meta = {
            "channel_id": channel_id,
            "name": name,
            "memo": memo or f"Audited DB: {name}",
            "created_at": now_ms(),
        }
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._meta_path(channel_id).write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")
            self._channel_path(channel_id).touch()
        except OSError as exc:
            raise LedgerSubmissionError(
                f"Failed to create channel in {self.root}: {exc}", transient=True
            ) from exc
        logger.info("ledger: created file channel %s (%s)", channel_id, name)
        return ChannelInfo(channel_id=channel_id, memo=meta["memo"], sequence_number=0)

    def get_channel_info(self, channel_id: str) -> ChannelInfo:
        meta_path = self._meta_path(channel_id)
        if not meta_path.exists():
            raise LedgerSubmissionError(f"Invalid channel: {channel_id!r}", transient=False)
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            with self._channel_path(channel_id).open("rb") as fh:
                last_sequence = _last_sequence(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise LedgerSubmissionError(
                f"Failed to read channel {channel_id!r}: {exc}", transient=True
            ) from exc
        return ChannelInfo(
            channel_id=channel_id,
            memo=str(meta.get("memo", "")),
            sequence_number=last_sequence,
        )

    # ── Submit ────────────────────────────────────────────────────────────────

    def submit(self, channel_id: str, payload: bytes) -> SubmitResult:
        if not self._meta_path(channel_id).exists():
            raise LedgerSubmissionError(f"Invalid channel: {channel_id!r}", transient=False)

        path = self._channel_path(channel_id)
        try:
            with path.open("a+b") as fh:
                fcntl.flock(fh, fcntl.LOCK_EX)
                try:
                    sequence = _last_sequence(fh) + 1
                    timestamp = now_ms()
                    body = {
                        "sequence": sequence,
                        "consensus_timestamp": timestamp,
                        "message": base64.b64encode(payload).decode("ascii"),
                    }
                    envelope = {**body, "_checksum": f"sha256:{_compute_checksum(body)}"}
                    line = json.dumps(envelope, sort_keys=True) + "\n"
                    fh.write(line.encode("utf-8"))
                    fh.flush()
                    os.fsync(fh.fileno())
                finally:
                    # Always release the lock, even if the write raised.
                    fcntl.flock(fh, fcntl.LOCK_UN)
        except OSError as exc:
            raise LedgerSubmissionError(
                f"Failed to append to channel {channel_id!r} at {path}: {exc}", transient=True
            ) from exc

        logger.debug("ledger: appended sequence %d to %s", sequence, path.name)
        return SubmitResult(
            status="SUCCESS",
            submitted_at=now_ms(),
            sequence_number=sequence,
            consensus_timestamp=timestamp,
        )

    # ── Subscribe ─────────────────────────────────────────────────────────────

    def subscribe(
        self,
        channel_id: str,
        from_sequence: int,
        *,
        stop: threading.Event | None = None,
        follow: bool = True,
    ) -> Iterator[ChannelMessage]:
        path = self._channel_path(channel_id)
        if not self._meta_path(channel_id).exists():
            raise LedgerSubmissionError(f"Invalid channel: {channel_id!r}", transient=False)
        stop = stop or threading.Event()

        try:
            fh = path.open("rb")
        except OSError as exc:
            raise LedgerSubmissionError(
                f"Failed to open channel {channel_id!r}: {exc}", transient=True
            ) from exc

        with fh:
            while not stop.is_set():
                position = fh.tell()
                raw = fh.readline()
                if raw and not raw.endswith(b"\n"):
                    # Partial line: a writer is mid-append.  Re-read it later.
                    fh.seek(position)
                    raw = b""
                if not raw:
                    if not follow:
                        return
                    stop.wait(self.poll_interval)
                    continue
                if not raw.strip():
                    continue
                message = _parse_line(raw, channel_id)
                if message.sequence >= from_sequence:
                    yield message

    # ── Paths ─────────────────────────────────────────────────────────────────

    def _channel_path(self, channel_id: str) -> Path:
        return self.root / f"{_safe_channel_id(channel_id)}.jsonl"

    def _meta_path(self, channel_id: str) -> Path:
        return self.root / f"{_safe_channel_id(channel_id)}.channel.json"


def _safe_channel_id(channel_id: str) -> str:
    if not channel_id or not all(ch.isalnum() or ch in "-_." for ch in channel_id):
        raise LedgerSubmissionError(f"Invalid channel id: {channel_id!r}", transient=False)
    if channel_id.startswith("."):
        raise LedgerSubmissionError(f"Invalid channel id: {channel_id!r}", transient=False)
    return channel_id


def _compute_checksum(payload: dict) -> str:
    """SHA-256 hex digest of the ``sort_keys`` JSON serialisation of *payload*."""
    canonical = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_line(raw: bytes, channel_id: str) -> ChannelMessage:
    """Decode one channel line, checking its embedded checksum.

    Raises:
        LedgerError: If the line is malformed or its checksum does not match.
            Corruption of the authoritative log is never skipped silently.
    """
    try:
        envelope = json.loads(raw.decode("utf-8"))
        recorded = envelope.pop("_checksum")
        if recorded != f"sha256:{_compute_checksum(envelope)}":
            raise ValueError("checksum mismatch")
        return ChannelMessage(
            sequence=int(envelope["sequence"]),
            payload=base64.b64decode(envelope["message"]),
            timestamp=int(envelope["consensus_timestamp"]),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise LedgerError(f"Corrupt line in channel {channel_id!r}: {exc}") from exc


def _last_sequence(fh: BinaryIO) -> int:
    """Return the sequence number on the last complete line of *fh* (0 if empty).

    Reads backwards from the end in growing chunks so arbitrarily long lines
    are handled without loading the whole file.
    """
    fh.seek(0, os.SEEK_END)
    size = fh.tell()
    if size == 0:
        return 0

    chunk_size = _TAIL_CHUNK_BYTES
    while True:
        start = max(0, size - chunk_size)
        fh.seek(start)
        chunk = fh.read(size - start)
        lines = [line for line in chunk.split(b"\n") if line.strip()]
        # The first element may be a truncated line unless we read from 0.
        candidates = lines if start == 0 else lines[1:]
        if candidates:
            try:
                return int(json.loads(candidates[-1].decode("utf-8"))["sequence"])
            except (ValueError, KeyError, TypeError) as exc:
                raise LedgerError(f"Corrupt last line in channel file: {exc}") from exc
        if start == 0:
            return 0
        chunk_size *= 2


# =============================================================================
# HTTP CHANNEL
# =============================================================================


class HttpChannelTransport(LedgerTransport):
    """Channel transport for a mirror-node style REST service.

    Args:
        base_url: Service root, e.g. ``https://ledger.example.org``.
        operator_id: Account submitting messages.
        operator_key: Credential presented as a bearer token.
        timeout: Per-request timeout in seconds.
        poll_interval: Seconds between polls while following.
        session: Optional pre-built :class:`requests.Session` (tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        operator_id: str,
        operator_key: str,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        if not self.base_url:
            raise ConfigurationError("HTTP ledger transport requires a base_url")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {operator_key}",
                "X-Operator-Id": operator_id,
                "Content-Type": "application/json",
            }
        )

    def create_channel(self, name: str, memo: str | None = None) -> ChannelInfo:
        body = self._request("POST", "/api/v1/channels", json={"name": name, "memo": memo or ""})
        return _channel_info(body)

    def get_channel_info(self, channel_id: str) -> ChannelInfo:
        return _channel_info(self._request("GET", f"/api/v1/channels/{channel_id}"))

    def submit(self, channel_id: str, payload: bytes) -> SubmitResult:
        body = self._request(
            "POST",
            f"/api/v1/channels/{channel_id}/messages",
            json={"message": base64.b64encode(payload).decode("ascii")},
        )
        try:
            return SubmitResult(
                status=str(body.get("status", "SUCCESS")),
                submitted_at=now_ms(),
                sequence_number=int(body["sequence_number"]),
                consensus_timestamp=_timestamp_ms(body["consensus_timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerSubmissionError(
                f"Channel returned a malformed acknowledgement: {exc}", transient=False
            ) from exc

    def subscribe(
        self,
        channel_id: str,
        from_sequence: int,
        *,
        stop: threading.Event | None = None,
        follow: bool = True,
    ) -> Iterator[ChannelMessage]:
        stop = stop or threading.Event()
        next_sequence = max(from_sequence, 0)
        while not stop.is_set():
            body = self._request(
                "GET",
                f"/api/v1/channels/{channel_id}/messages",
                params={
                    "sequencenumber": f"gte:{next_sequence}",
                    "limit": _HTTP_PAGE_LIMIT,
                    "order": "asc",
                },
            )
            page = body.get("messages") or []
            for item in page:
                try:
                    message = ChannelMessage(
                        sequence=int(item["sequence_number"]),
                        payload=base64.b64decode(item["message"]),
                        timestamp=_timestamp_ms(item["consensus_timestamp"]),
                    )
                except (KeyError, TypeError, ValueError) as exc:
                    raise LedgerError(f"Malformed message in channel {channel_id!r}: {exc}") from exc
                if message.sequence < next_sequence:
                    continue
                next_sequence = message.sequence + 1
                yield message
            if len(page) < _HTTP_PAGE_LIMIT:
                if not follow:
                    return
                stop.wait(self.poll_interval)

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise LedgerSubmissionError(f"{method} {url} failed: {exc}", transient=True) from exc
        except requests.exceptions.RequestException as exc:
            raise LedgerSubmissionError(f"{method} {url} failed: {exc}", transient=False) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise LedgerSubmissionError(
                f"{method} {url} returned HTTP {response.status_code}", transient=True
            )
        if response.status_code >= 400:
            raise LedgerSubmissionError(
                f"{method} {url} rejected with HTTP {response.status_code}: {response.text[:200]}",
                transient=False,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerSubmissionError(f"{method} {url} returned invalid JSON", transient=True) from exc
        if not isinstance(body, dict):
            raise LedgerSubmissionError(f"{method} {url} returned a non-object payload", transient=True)
        return body


def _channel_info(body: dict[str, Any]) -> ChannelInfo:
    try:
        return ChannelInfo(
            channel_id=str(body["channel_id"]),
            memo=str(body.get("memo", "")),
            sequence_number=int(body.get("sequence_number", 0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerSubmissionError(f"Malformed channel description: {exc}", transient=False) from exc


def _timestamp_ms(value: Any) -> int:
    """Accept ms-epoch integers or ``"seconds.nanoseconds"`` strings."""
    if isinstance(value, str) and "." in value:
        seconds, _, nanos = value.partition(".")
        return int(seconds) * 1000 + int(nanos.ljust(9, "0")[:3])
    return int(value)


# =============================================================================
# FACTORY
# =============================================================================


def build_transport(settings: LedgerSettings, *, poll_interval: float = 0.5) -> LedgerTransport:
    """Construct the transport selected by ``ledger.transport``.

    Raises:
        ConfigurationError: For an unknown transport name.
    """
    if settings.transport == "file":
        return FileChannelTransport(settings.absolute_root, poll_interval=poll_interval)
    if settings.transport == "http":
        return HttpChannelTransport(
            settings.base_url,
            operator_id=settings.operator_id,
            operator_key=settings.operator_key,
            timeout=settings.timeout_seconds,
            poll_interval=poll_interval,
        )
    raise ConfigurationError(f"Unknown ledger transport: {settings.transport!r}")
