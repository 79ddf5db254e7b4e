#!/usr/bin/env python3
"""
events.py -- Pipeline events and their delivery channel.

The producer (sample thread) publishes into a bounded FIFO and never
blocks: when the queue is full the oldest pending event is discarded.
Consumers either poll with :meth:`EventChannel.drain` (e.g. a GUI timer)
or attach callbacks to an :class:`EventDispatcher` thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np

from .calibration import CalibrationData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrientationEvent:
    timestamp: int               # µs, timestamp of the sample that produced it
    quaternion: np.ndarray       # [w, x, y, z]


@dataclass(frozen=True)
class CalibrationEvent:
    calibration: CalibrationData


@dataclass(frozen=True)
class ErrorEvent:
    category: str                # transport | validation | filter | calibration | numerical
    message: str


Event = Union[OrientationEvent, CalibrationEvent, ErrorEvent]


class EventChannel:
    """Bounded, order-preserving, non-blocking-publish event queue."""

    def __init__(self, maxsize: int = 1024):
        self._q: queue.Queue = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.dropped = 0

    def publish(self, event: Event) -> None:
        with self._lock:
            while True:
                try:
                    self._q.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._q.get_nowait()
                    except queue.Empty:
                        continue
                    self.dropped += 1
                    if self.dropped == 1 or self.dropped % 100 == 0:
                        logger.warning("event queue full; %d events dropped so far",
                                       self.dropped)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None if nothing arrives within *timeout*."""
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        """All pending events in publication order."""
        events = []
        while True:
            try:
                events.append(self._q.get_nowait())
            except queue.Empty:
                return events

    def __len__(self) -> int:
        return self._q.qsize()


class EventDispatcher:
    """Background thread delivering channel events to subscribed callbacks."""

    def __init__(self, channel: EventChannel, poll: float = 0.1):
        self.channel = channel
        self.poll = poll
        self._subs: dict[type, list[Callable[[Event], None]]] = defaultdict(list)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, event_type: type, callback: Callable[[Event], None]) -> None:
        self._subs[event_type].append(callback)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="event-dispatch",
                                        daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            event = self.channel.get(timeout=self.poll)
            if event is not None:
                self.dispatch(event)
        # Flush what was published before stop()
        for event in self.channel.drain():
            self.dispatch(event)

    def dispatch(self, event: Event) -> None:
        for cb in self._subs.get(type(event), ()):
            try:
                cb(event)
            except Exception:
                logger.exception("event callback %r failed", cb)
