"""Ledger package: the external, append-only, globally ordered channel.

The channel is the **authoritative record** of every mutation.  The
relational store is a projection that can always be rebuilt by replaying it.
A mutation is committed locally only after the channel has acknowledged it.

Public surface
--------------
- :class:`LedgerClient`          retrying client bound to one channel.
- :class:`LedgerMessage`         canonical mutation payload.
- :class:`MessageType`           INSERT / UPDATE / DELETE_SOFT / DELETE_HARD / SCHEMA_INIT.
- :class:`ChannelMessage`        one ordered delivery ``(sequence, payload, timestamp)``.
- :class:`ChannelInfo`           channel id, memo, and current sequence head.
- :class:`SubmitResult`          ordering acknowledgement for a submission.
- :class:`LedgerTransport`       interface for channel transports.
- :class:`FileChannelTransport`  JSONL channel files under an ``fcntl`` lock.
- :class:`HttpChannelTransport`  mirror-node style REST channel service.
- :func:`build_transport`        construct the configured transport.

Usage example
-------------
::

    from audited_db.ledger import FileChannelTransport, LedgerClient, LedgerMessage, MessageType

    client = LedgerClient(FileChannelTransport("data/channels"))
    client.create_channel("inventory")
    ack = client.submit(
        LedgerMessage(type=MessageType.INSERT, table="items", tx_id="ab12", data_hash="ff00")
    )
    logger.debug("ordered at %d", ack.sequence_number)
"""

from audited_db.ledger.client import LedgerClient
from audited_db.ledger.messages import (
    ChannelInfo,
    ChannelMessage,
    LedgerMessage,
    MessageType,
    SubmitResult,
)
from audited_db.ledger.transport import (
    FileChannelTransport,
    HttpChannelTransport,
    LedgerTransport,
    build_transport,
)

__all__ = [
    "ChannelInfo",
    "ChannelMessage",
    "FileChannelTransport",
    "HttpChannelTransport",
    "LedgerClient",
    "LedgerMessage",
    "LedgerTransport",
    "MessageType",
    "SubmitResult",
    "build_transport",
]
