"""Ledger client: retrying, single-channel façade over a transport.

One :class:`LedgerClient` is bound to exactly one channel for the lifetime of
a database instance.  The channel's externally assigned sequence numbers are
the only source of total order across every subscriber.

Retry policy
------------
``submit`` retries failures the transport marks as *transient* with
exponential backoff::

    delay = min(backoff_seconds * 2 ** (attempt - 1), backoff_max_seconds)

up to ``max_attempts`` attempts in total.  Permanent rejections are raised on
the first occurrence.  Nothing is ever dropped silently: the caller either
gets a :class:`~audited_db.ledger.messages.SubmitResult` or an exception.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator

from audited_db.errors import LedgerSubmissionError, NotInitialized
from audited_db.ledger.messages import ChannelInfo, ChannelMessage, LedgerMessage, SubmitResult
from audited_db.ledger.transport import LedgerTransport

logger = logging.getLogger(__name__)


class LedgerClient:
    """Submit to and subscribe on a single ordered channel.

    Args:
        transport: Wire-level channel implementation.
        max_attempts: Total submission attempts for transient failures.
        backoff_seconds: Delay before the first retry.
        backoff_max_seconds: Upper bound on any single delay.
        sleep: Injected sleep function (tests pass a recorder).
    """

    def __init__(
        self,
        transport: LedgerTransport,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._channel: ChannelInfo | None = None

    # ------------------------------------------------------------------
    # Channel binding
    # ------------------------------------------------------------------

    @property
    def channel_id(self) -> str | None:
        return self._channel.channel_id if self._channel else None

    def create_channel(self, name: str, memo: str | None = None) -> ChannelInfo:
        """Create a new channel and bind this client to it."""
        self._ensure_unbound()
        info = self._with_retry("create_channel", lambda: self.transport.create_channel(name, memo))
        self._channel = info
        logger.info("Ledger channel created: %s", info.channel_id)
        return info

    def attach_to_channel(self, channel_id: str) -> ChannelInfo:
        """Bind to an existing channel and return its current sequence state."""
        self._ensure_unbound()
        info = self._with_retry("attach", lambda: self.transport.get_channel_info(channel_id))
        self._channel = info
        logger.info(
            "Ledger channel attached: %s (memo=%r, sequence=%d)",
            info.channel_id,
            info.memo,
            info.sequence_number,
        )
        return info

    def channel_info(self) -> ChannelInfo:
        """Fetch the bound channel's current state (sequence head)."""
        channel_id = self._require_channel()
        return self._with_retry("channel_info", lambda: self.transport.get_channel_info(channel_id))

    # ------------------------------------------------------------------
    # Submit / subscribe
    # ------------------------------------------------------------------

    def submit(self, message: LedgerMessage) -> SubmitResult:
        """Publish *message* and block until the channel has ordered it.

        Raises:
            NotInitialized: If no channel is bound.
            EncodingError: If the message cannot be serialised canonically.
            LedgerSubmissionError: On a permanent rejection, or once transient
                retries are exhausted.
        """
        channel_id = self._require_channel()
        payload = message.encode()
        result = self._with_retry("submit", lambda: self.transport.submit(channel_id, payload))
        logger.debug(
            "ledger: %s %s/%s ordered at sequence %d",
            message.type.value,
            message.table,
            message.tx_id,
            result.sequence_number,
        )
        return result

    def subscribe(
        self,
        from_sequence: int,
        *,
        stop: threading.Event | None = None,
        follow: bool = True,
    ) -> Iterator[ChannelMessage]:
        """Stream deliveries with ``sequence >= from_sequence`` in channel order."""
        channel_id = self._require_channel()
        return self.transport.subscribe(channel_id, from_sequence, stop=stop, follow=follow)

    def close(self) -> None:
        self.transport.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _with_retry(self, operation: str, call):
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except LedgerSubmissionError as exc:
                if not exc.transient:
                    exc.attempts = attempt
                    logger.error("ledger: %s rejected permanently: %s", operation, exc)
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "ledger: %s failed after %d attempts: %s", operation, attempt, exc
                    )
                    raise LedgerSubmissionError(
                        f"{operation} failed after {attempt} attempts: {exc}",
                        transient=True,
                        attempts=attempt,
                    ) from exc
                delay = min(self.backoff_seconds * 2 ** (attempt - 1), self.backoff_max_seconds)
                logger.warning(
                    "ledger: %s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)

    def _require_channel(self) -> str:
        if self._channel is None:
            raise NotInitialized("Ledger client is not attached to a channel")
        return self._channel.channel_id

    def _ensure_unbound(self) -> None:
        if self._channel is not None:
            raise LedgerSubmissionError(
                f"Ledger client already bound to channel {self._channel.channel_id}",
                transient=False,
            )
