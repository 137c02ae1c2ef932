import pytest

from usdm_core.data.sequence_stamper import SequenceStamper
from usdm_core.exceptions import DuplicateEvent, SequenceGap
from usdm_core.reconciliation.cursor import SequenceCursor


def test_fresh_cursor_expects_one():
    cursor = SequenceCursor("user")

    assert cursor.position == 0
    assert cursor.expected == 1
    cursor.check(1)


def test_duplicate_and_gap_classification():
    cursor = SequenceCursor("user", position=2)

    with pytest.raises(DuplicateEvent) as dup:
        cursor.check(2)
    assert dup.value.cursor == 2

    with pytest.raises(SequenceGap) as gap:
        cursor.check(4)
    assert gap.value.expected == 3
    assert gap.value.observed == 4

    cursor.check(3)


def test_advance_is_strictly_increasing():
    cursor = SequenceCursor("user")
    cursor.advance(1)
    cursor.advance(2)

    with pytest.raises(ValueError):
        cursor.advance(2)


def test_reset_rebases_in_either_direction():
    cursor = SequenceCursor("user", position=10)

    cursor.reset(4)
    assert cursor.position == 4
    cursor.reset(12)
    assert cursor.expected == 13


def test_stamper_is_contiguous_per_stream():
    stamper = SequenceStamper()

    assert [stamper.stamp("user", {}).sequence for _ in range(3)] == [1, 2, 3]
    assert stamper.stamp("market", {}).sequence == 1
    assert stamper.current("user") == 3
    assert stamper.current("unknown") == 0


def test_stamper_reconnect_continues_sequence():
    stamper = SequenceStamper()
    stamper.stamp("user", {"e": "ORDER_TRADE_UPDATE"})

    raw = stamper.reconnected("user")

    assert raw.sequence == 2
    assert raw.payload["e"] == "streamReconnected"
    assert stamper.stamp("user", {}).sequence == 3
