# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import argparse
import logging
import pathlib
import sys
import typing

import trio

from .commontypes import ExitCode, SettingsError
from .relay import Relay
from .settings import DEFAULT_INPUT_PATH, DEFAULT_OUTPUT_PATH, Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

parser = argparse.ArgumentParser(prog="irrelay", description="Listens for IR events and calculates HOLD events")
parser.add_argument(
    "-i", "--input", dest="input_path", type=pathlib.Path, metavar="FILE", help=f"lircd socket to read (default {DEFAULT_INPUT_PATH})"
)
parser.add_argument(
    "-o", "--output", dest="output_path", type=pathlib.Path, metavar="FILE", help=f"socket to serve events on (default {DEFAULT_OUTPUT_PATH})"
)


def setup_logging(settings: Settings):
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)


def load_settings(**overrides: typing.Any) -> typing.Optional[Settings]:
    "Read settings from the environment and set up logging; None if the settings are unusable."
    try:
        settings = Settings.from_environment().overriding(**overrides)
    except SettingsError as exc:
        setup_logging(Settings())
        logger.critical("%s", exc)
        return None
    setup_logging(settings)
    return settings


def main(argv=sys.argv):
    """
    Args:
        argv (list): List of arguments

    Returns:
        int: A return code

    Runs the relay until a termination signal arrives or the input socket goes away.
    """
    parsed = parser.parse_args(argv[1:])
    settings = load_settings(input_path=parsed.input_path, output_path=parsed.output_path)
    if settings is None:
        return int(ExitCode.STARTUP_FAILED)
    logger.info("Starting IR relay")
    return int(trio.run(Relay(settings).run))
