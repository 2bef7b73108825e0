"""Thread-safe FIFO of inbound frames.

Many producers (read workers), one consumer (the host draining it).
Bounded by default: when full, ``DROP_OLDEST`` evicts the head to make
room and ``REJECT`` refuses the new frame.  Both count into ``dropped``.
Accepted frames are stamped with their arrival ``sequence`` under the
same lock that orders them, so pop order and sequence order agree.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Deque, List, Optional

from .core.models import Frame, OverflowPolicy

log = logging.getLogger(__name__)


class ReceivedQueue:
    """deque + Condition; pop never returns frames out of push order."""

    def __init__(self, capacity: Optional[int] = None,
                 overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST):
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive or None")
        self.capacity = capacity
        self.overflow_policy = overflow_policy
        self._frames: Deque[Frame] = deque()
        self._cond = threading.Condition(threading.Lock())
        self.dropped = 0
        self.pushed = 0
        self._next_sequence = 0

    def push(self, frame: Frame) -> bool:
        """Append *frame* with the next sequence number.

        Returns False only when REJECT refused it (no number is used up).
        """
        with self._cond:
            if self.capacity is not None and len(self._frames) >= self.capacity:
                self.dropped += 1
                if self.overflow_policy is OverflowPolicy.REJECT:
                    log.warning("Received queue full (%d), frame from EP 0x%02x rejected",
                                self.capacity, frame.endpoint)
                    return False
                self._frames.popleft()
                log.warning("Received queue full (%d), oldest frame dropped",
                            self.capacity)
            self._frames.append(replace(frame, sequence=self._next_sequence))
            self._next_sequence += 1
            self.pushed += 1
            self._cond.notify()
            return True

    def pop(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Oldest frame, or None if empty.

        With *timeout*, wait up to that many seconds for a frame first.
        """
        with self._cond:
            if not self._frames and timeout:
                self._cond.wait_for(lambda: bool(self._frames), timeout)
            if not self._frames:
                return None
            return self._frames.popleft()

    def drain(self) -> List[Frame]:
        """Pop everything currently queued, oldest first."""
        with self._cond:
            frames = list(self._frames)
            self._frames.clear()
            return frames

    def is_empty(self) -> bool:
        with self._cond:
            return not self._frames

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)
