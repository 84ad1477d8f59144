# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import string

import trio
import tricycle

from .commontypes import ParseError
from .relaytypes import MAX_REPEAT, Event

HEXDIGITS = frozenset(string.hexdigits)


def parse_repeat(field: str) -> int:
    # int(x, 16) would also accept "0x", "+", "_" and surrounding whitespace
    if not field or not HEXDIGITS.issuperset(field):
        raise ParseError(f"can't parse {field!r} as a hexadecimal repeat count")
    repeat = int(field, 16)
    if repeat > MAX_REPEAT:
        raise ParseError(f"repeat count {field!r} does not fit in 32 bits")
    return repeat


def decode(line: str) -> Event:
    fields = line.split()
    if len(fields) != 4:
        raise ParseError(f"{line!r} does not have 4 fields")
    id_, repeat, name, device = fields
    return Event(id=id_, repeat=parse_repeat(repeat), name=name, device=device)


def encode(event: Event) -> str:
    return f"{event.id} {event.repeat:x} {event.name} {event.device}"


class LineReceiveChannel(trio.abc.ReceiveChannel[str]):
    """Newline-delimited text lines read from a byte stream.

    Lines are returned without their terminator. A final unterminated line is still returned
    before the channel reports end-of-channel.
    """

    def __init__(self, stream: trio.abc.ReceiveStream, encoding: str = "utf-8"):
        self.stream = stream
        self.text_stream = tricycle.TextReceiveStream(stream, encoding, errors="replace")

    async def receive(self) -> str:
        line = await self.text_stream.receive_line()
        if not line:
            raise trio.EndOfChannel
        return line.rstrip("\r\n")

    async def aclose(self):
        await self.stream.aclose()
