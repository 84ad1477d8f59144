# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
import enum


class IrRelayError(Exception):
    pass


class ParseError(IrRelayError, ValueError):
    pass


class ConnectError(IrRelayError):
    pass


class SettingsError(IrRelayError, ValueError):
    pass


@enum.unique
class ExitCode(enum.IntEnum):
    OK = 0
    STARTUP_FAILED = 1
    CHANNEL_CLOSED = 2
