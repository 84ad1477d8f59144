# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import typing

import msgspec

if typing.TYPE_CHECKING:
    import trio

HOLD_SUFFIX = "_HOLD"
MAX_REPEAT = 0xFFFFFFFF


class Event(msgspec.Struct, frozen=True):
    id: str
    repeat: int
    name: str
    device: str

    def to_hold(self):
        return Event(id=self.id, repeat=0, name=self.name + HOLD_SUFFIX, device=self.device)

    def to_new(self):
        return Event(id=self.id, repeat=0, name=self.name, device=self.device)

    def continues(self, previous: Event) -> bool:
        "True if this event is the next report of the same held key."
        return self.name == previous.name and self.repeat == previous.repeat + 1


class PendingState(msgspec.Struct, frozen=True):
    event: Event
    arrival_time: float

    def replacing(self, event: Event):
        # arrival_time stays pinned to the original press
        return msgspec.structs.replace(self, event=event)


### Registry control messages


class Init(msgspec.Struct, frozen=True, tag=True):
    client_id: int
    queue: trio.MemorySendChannel[str]


class Close(msgspec.Struct, frozen=True, tag=True):
    client_id: int


RegistryMessage = Init | Close
