# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
"""Convert timedeltas to and from Go-style duration strings, such as "1s", "500ms" or "1m30s"."""
import datetime
import decimal
import re

from .util import maybe_int

UNITS = {
    "h": datetime.timedelta(hours=1),
    "m": datetime.timedelta(minutes=1),
    "s": datetime.timedelta(seconds=1),
    "ms": datetime.timedelta(milliseconds=1),
    "us": datetime.timedelta(microseconds=1),
}

# "ms" must be tried before "m"
DURATION_PART = re.compile(r"(\d+(?:\.\d*)?)(us|ms|h|m|s)")


def parse_duration(val: str) -> datetime.timedelta:
    sign = -1 if val.startswith("-") else 1
    body = val[1:] if val[:1] in ("-", "+") else val
    if not body:
        raise ValueError("Empty duration string")
    if body == "0":
        return datetime.timedelta()

    accum = datetime.timedelta()
    pos = 0
    while pos < len(body):
        match = DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"Invalid duration string {val!r} at position {pos}")
        number, unit = match.groups()
        # timedelta * Decimal isn't supported, so go through an exact ratio
        num, denom = decimal.Decimal(number).as_integer_ratio()
        accum += num * UNITS[unit] / denom
        pos = match.end()
    return sign * accum


def format_duration(val: datetime.timedelta) -> str:
    if val == datetime.timedelta():
        return "0"
    sign = "-" if val < datetime.timedelta() else ""
    val = abs(val)

    if val < UNITS["ms"]:
        return f"{sign}{val.microseconds}us"
    if val < UNITS["s"]:
        return f"{sign}{maybe_int(val / UNITS['ms'])}ms"

    hours, val = divmod(val, UNITS["h"])
    minutes, val = divmod(val, UNITS["m"])
    parts = [sign]
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if val:
        parts.append(f"{maybe_int(val.total_seconds())}s")
    return "".join(parts)
