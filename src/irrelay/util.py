# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import logging
import pathlib

from .commontypes import ConnectError

logger = logging.getLogger(__name__)


def maybe_int(val: float):
    return int(val) if val.is_integer() else val


def remove_stale_socket(path: pathlib.Path):
    "Remove a socket file left behind by an earlier run, so it can be bound again."
    # delete-then-bind is racy against another process binding the same path; we accept that
    if not path.exists() and not path.is_symlink():
        return
    logger.info("Removing stale socket file '%s'", path)
    try:
        path.unlink()
    except OSError as exc:
        raise ConnectError(f"Couldn't remove stale socket {path}: {exc}") from exc
