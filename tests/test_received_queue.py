"""Tests for received_queue.py — FIFO, bounds, overflow policies, threads."""

import threading

import pytest

from hidbridge.core.models import Frame, OverflowPolicy
from hidbridge.received_queue import ReceivedQueue


def _frame(n, endpoint=0x81):
    return Frame(bytes([n]), endpoint=endpoint)


class TestReceivedQueue:

    def test_empty(self):
        q = ReceivedQueue()
        assert q.is_empty()
        assert q.pop() is None
        assert len(q) == 0

    def test_fifo_order(self):
        q = ReceivedQueue()
        for i in range(5):
            q.push(_frame(i))
        assert [q.pop().sequence for _ in range(5)] == [0, 1, 2, 3, 4]
        assert q.is_empty()

    def test_drop_oldest_when_full(self):
        q = ReceivedQueue(capacity=3, overflow_policy=OverflowPolicy.DROP_OLDEST)
        for i in range(5):
            assert q.push(_frame(i))
        assert [f.sequence for f in q.drain()] == [2, 3, 4]
        assert q.dropped == 2

    def test_reject_when_full(self):
        q = ReceivedQueue(capacity=2, overflow_policy=OverflowPolicy.REJECT)
        assert q.push(_frame(0))
        assert q.push(_frame(1))
        assert not q.push(_frame(2))
        assert [f.sequence for f in q.drain()] == [0, 1]
        assert q.dropped == 1

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ReceivedQueue(capacity=0)

    def test_pop_with_timeout_waits_for_push(self):
        q = ReceivedQueue()
        timer = threading.Timer(0.05, q.push, args=(_frame(7),))
        timer.start()
        try:
            frame = q.pop(timeout=2.0)
        finally:
            timer.cancel()
        assert frame is not None and frame.data == b"\x07"

    def test_pop_timeout_expires(self):
        assert ReceivedQueue().pop(timeout=0.01) is None

    def test_concurrent_producers_keep_per_producer_order(self):
        q = ReceivedQueue()
        per_producer = 200

        def produce(endpoint):
            for i in range(per_producer):
                q.push(Frame(i.to_bytes(2, 'big'), endpoint=endpoint))

        threads = [threading.Thread(target=produce, args=(ep,)) for ep in (0x81, 0x82, 0x83)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        frames = q.drain()
        assert len(frames) == 3 * per_producer
        for ep in (0x81, 0x82, 0x83):
            seen = [int.from_bytes(f.data, 'big') for f in frames if f.endpoint == ep]
            assert seen == list(range(per_producer))

    def test_sequence_assigned_on_push(self):
        q = ReceivedQueue()
        q.push(Frame(b"a", endpoint=0x81, sequence=41))
        q.push(Frame(b"b", endpoint=0x82, sequence=3))
        assert [(f.data, f.sequence) for f in q.drain()] == [(b"a", 0), (b"b", 1)]

    def test_rejected_frame_uses_no_sequence(self):
        q = ReceivedQueue(capacity=1, overflow_policy=OverflowPolicy.REJECT)
        q.push(_frame(0))
        assert not q.push(_frame(1))
        q.pop()
        q.push(_frame(2))
        assert q.pop().sequence == 1

    def test_sequence_matches_pop_order_across_producers(self):
        q = ReceivedQueue()
        per_producer = 300
        start = threading.Barrier(2)

        def produce(endpoint):
            start.wait()
            for i in range(per_producer):
                q.push(Frame(bytes([i % 256]), endpoint=endpoint))

        threads = [threading.Thread(target=produce, args=(ep,)) for ep in (0x81, 0x82)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        popped = []
        while not q.is_empty():
            popped.append(q.pop().sequence)
        assert popped == list(range(2 * per_producer))
