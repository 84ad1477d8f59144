# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import datetime
import logging
import math
import typing
from contextlib import aclosing

import trio

from .codec import encode
from .relaytypes import Event, PendingState

if typing.TYPE_CHECKING:
    from .settings import Settings

logger = logging.getLogger(__name__)

HOLD_THRESHOLD = datetime.timedelta(milliseconds=500)
SETTLE_INTERVAL = datetime.timedelta(milliseconds=100)
HEARTBEAT_INTERVAL = datetime.timedelta(seconds=1)


class Classifier:
    """Turns lircd repeat reports into NEW and HOLD presses.

    A press (repeat 0) becomes pending. Each following report of the same key with the next repeat
    count replaces the pending event, but the press time is kept, so the hold threshold measures how
    long the key has been held in total. The pending event is emitted:

    - as a HOLD once a repeat arrives, or the settle timer fires, more than hold_threshold after the press;
    - as a NEW if the settle timer fires before that;
    - unmodified if a different key or a broken repeat sequence interrupts it.

    Repeats with no pending press are dropped.
    """

    pending: typing.Optional[PendingState]
    deadline: float

    def __init__(
        self,
        hold_threshold: datetime.timedelta = HOLD_THRESHOLD,
        settle_interval: datetime.timedelta = SETTLE_INTERVAL,
        heartbeat_interval: datetime.timedelta = HEARTBEAT_INTERVAL,
    ):
        self.hold_threshold = hold_threshold.total_seconds()
        self.settle_interval = settle_interval.total_seconds()
        self.heartbeat_interval = heartbeat_interval.total_seconds()
        self.pending = None
        self.deadline = math.inf

    @classmethod
    def from_settings(cls, settings: Settings):
        return cls(
            hold_threshold=settings.hold_threshold,
            settle_interval=settings.settle_interval,
            heartbeat_interval=settings.heartbeat_interval,
        )

    def _arm(self, now: float):
        self.deadline = now + (self.heartbeat_interval if self.pending is None else self.settle_interval)

    def _held_long(self, now: float):
        return now - self.pending.arrival_time > self.hold_threshold

    def _start(self, event: Event, now: float):
        self.pending = PendingState(event=event, arrival_time=now) if event.repeat == 0 else None

    def feed(self, event: Event, now: float) -> list[Event]:
        emitted = []
        if self.pending is None:
            if event.repeat == 0:
                logger.debug("press %s", event.name)
                self._start(event, now)
            else:
                logger.debug("dropping orphaned repeat %s", encode(event))
        else:
            previous = self.pending.event
            if event.name != previous.name:
                logger.debug("key changed from %s to %s", previous.name, event.name)
                emitted.append(previous)
                self._start(event, now)
            elif not event.continues(previous):
                logger.debug("repeat sequence broken: expected %d, got %d", previous.repeat + 1, event.repeat)
                emitted.append(previous)
                self._start(event, now)
            elif self._held_long(now):
                logger.debug("long press %s", previous.name)
                emitted.append(previous.to_hold())
                self.pending = None
            else:
                self.pending = self.pending.replacing(event)
        self._arm(now)
        return emitted

    def expire(self, now: float) -> list[Event]:
        emitted = []
        if self.pending is None:
            logger.debug("heartbeat at %.3f", now)
        else:
            previous = self.pending.event
            emitted.append(previous.to_hold() if self._held_long(now) else previous.to_new())
            self.pending = None
        self._arm(now)
        return emitted

    async def pump(self, source: trio.MemoryReceiveChannel[Event], sink: trio.MemorySendChannel[Event]):
        try:
            async with aclosing(source), aclosing(sink):
                self._arm(trio.current_time())
                while True:
                    event = None
                    with trio.move_on_at(self.deadline):
                        try:
                            event = await source.receive()
                        except trio.EndOfChannel:
                            break
                    now = trio.current_time()
                    if event is None:
                        emitted = self.expire(now)
                    else:
                        logger.info("Got %s", encode(event))
                        emitted = self.feed(event, now)
                    for classified in emitted:
                        await sink.send(classified)
        finally:
            if self.pending is not None:
                logger.info("Discarding pending %s", encode(self.pending.event))
                self.pending = None
            logger.info("Classifier exited")
