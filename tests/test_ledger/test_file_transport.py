"""Tests for the JSONL file channel transport.

Each test gets its own channel directory under ``tmp_path``; nothing touches
``data/channels``.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from audited_db.errors import LedgerError, LedgerSubmissionError
from audited_db.ledger.transport import FileChannelTransport


@pytest.fixture
def transport(tmp_path: Path) -> FileChannelTransport:
    return FileChannelTransport(tmp_path / "channels", poll_interval=0.01)


@pytest.fixture
def channel_id(transport: FileChannelTransport) -> str:
    return transport.create_channel("inventory", memo="test channel").channel_id


def _collect(transport, channel_id, from_sequence=1):
    return list(transport.subscribe(channel_id, from_sequence, follow=False))


class TestChannels:
    def test_create_channel_starts_empty(self, transport, channel_id):
        info = transport.get_channel_info(channel_id)

        assert info.channel_id == channel_id
        assert info.memo == "test channel"
        assert info.sequence_number == 0

    def test_default_memo_names_the_database(self, transport):
        info = transport.create_channel("inventory")
        assert info.memo == "Audited DB: inventory"

    def test_unknown_channel_is_a_permanent_error(self, transport):
        with pytest.raises(LedgerSubmissionError) as excinfo:
            transport.get_channel_info("missing")
        assert excinfo.value.transient is False

    @pytest.mark.parametrize("bad_id", ["", "../escape", ".hidden", "a/b"])
    def test_path_like_channel_ids_are_rejected(self, transport, bad_id):
        with pytest.raises(LedgerSubmissionError) as excinfo:
            transport.submit(bad_id, b"{}")
        assert excinfo.value.transient is False


class TestSubmit:
    def test_sequences_are_gapless_from_one(self, transport, channel_id):
        results = [transport.submit(channel_id, f"m{i}".encode()) for i in range(3)]

        assert [result.sequence_number for result in results] == [1, 2, 3]
        assert all(result.status == "SUCCESS" for result in results)
        assert transport.get_channel_info(channel_id).sequence_number == 3

    def test_concurrent_submitters_never_share_a_sequence(self, transport, channel_id):
        sequences: list[int] = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                result = transport.submit(channel_id, b"x")
                with lock:
                    sequences.append(result.sequence_number)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(sequences) == list(range(1, 41))

    def test_submit_to_unknown_channel_is_permanent(self, transport):
        with pytest.raises(LedgerSubmissionError) as excinfo:
            transport.submit("missing", b"{}")
        assert excinfo.value.transient is False


class TestSubscribe:
    def test_delivers_payloads_in_order(self, transport, channel_id):
        acks = [transport.submit(channel_id, payload) for payload in (b"a", b"b", b"c")]

        messages = _collect(transport, channel_id)

        assert [message.sequence for message in messages] == [1, 2, 3]
        assert [message.payload for message in messages] == [b"a", b"b", b"c"]
        assert [message.timestamp for message in messages] == [ack.consensus_timestamp for ack in acks]

    def test_starts_from_requested_sequence(self, transport, channel_id):
        for payload in (b"a", b"b", b"c"):
            transport.submit(channel_id, payload)

        assert [message.payload for message in _collect(transport, channel_id, 3)] == [b"c"]
        assert _collect(transport, channel_id, 4) == []

    def test_follow_mode_sees_later_submissions(self, transport, channel_id):
        stop = threading.Event()
        received = []

        def consume():
            for message in transport.subscribe(channel_id, 1, stop=stop, follow=True):
                received.append(message.payload)
                if len(received) == 2:
                    stop.set()

        consumer = threading.Thread(target=consume)
        consumer.start()
        transport.submit(channel_id, b"first")
        transport.submit(channel_id, b"second")
        consumer.join(timeout=5)

        assert not consumer.is_alive()
        assert received == [b"first", b"second"]

    def test_tampered_line_raises(self, transport, channel_id, tmp_path):
        transport.submit(channel_id, b"original")
        path = tmp_path / "channels" / f"{channel_id}.jsonl"
        envelope = json.loads(path.read_text(encoding="utf-8"))
        envelope["message"] = "Zm9yZ2Vk"
        path.write_text(json.dumps(envelope) + "\n", encoding="utf-8")

        with pytest.raises(LedgerError, match="Corrupt line"):
            _collect(transport, channel_id)
