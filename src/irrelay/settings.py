# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
import dataclasses
import datetime
import json
import logging
import os
import pathlib
import typing

import cattrs
from cattrs.gen import make_dict_structure_fn

from .commontypes import SettingsError
from .durations import format_duration, parse_duration

DEFAULT_INPUT_PATH = pathlib.Path("/var/run/lirc/lircd")
DEFAULT_OUTPUT_PATH = pathlib.Path("/var/run/lirc/lircd2")
DEFAULT_CLIENT_QUEUE_SIZE = 64
SETTINGS_ENVVAR = "IRRELAY_SETTINGS"

settings_converter = cattrs.Converter()
settings_converter.register_unstructure_hook(datetime.timedelta, format_duration)
settings_converter.register_structure_hook(datetime.timedelta, lambda d, _: parse_duration(d))
settings_converter.register_unstructure_hook(pathlib.Path, str)
settings_converter.register_structure_hook(pathlib.Path, lambda v, _: pathlib.Path(v))


@dataclasses.dataclass(kw_only=True, frozen=True)
class Settings:
    input_path: pathlib.Path = DEFAULT_INPUT_PATH
    output_path: pathlib.Path = DEFAULT_OUTPUT_PATH
    hold_threshold: datetime.timedelta = datetime.timedelta(milliseconds=500)
    settle_interval: datetime.timedelta = datetime.timedelta(milliseconds=100)
    heartbeat_interval: datetime.timedelta = datetime.timedelta(seconds=1)
    client_queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE
    log_level: str = "INFO"

    def __post_init__(self):
        for field in ("hold_threshold", "settle_interval", "heartbeat_interval"):
            if getattr(self, field) <= datetime.timedelta(0):
                raise SettingsError(f"{field} must be positive, not {format_duration(getattr(self, field))}")
        # a zero-size queue would drop any client that isn't already parked in receive()
        if self.client_queue_size < 1:
            raise SettingsError(f"client_queue_size must be at least 1, not {self.client_queue_size}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise SettingsError(f"unknown log_level {self.log_level!r}")

    def overriding(self, **overrides: typing.Any):
        "Return a copy with every override that isn't None applied."
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def dump(self) -> dict:
        return settings_converter.unstructure(self)

    @classmethod
    def load(cls, src: pathlib.Path):
        try:
            with src.open() as f:
                raw = json.load(f)
            return settings_converter.structure(raw, cls)
        except (OSError, json.JSONDecodeError, cattrs.errors.ClassValidationError, cattrs.errors.ForbiddenExtraKeysError) as exc:
            raise SettingsError(f"Couldn't load settings from {src}: {exc!r}") from exc

    @classmethod
    def from_environment(cls, environ: typing.Mapping[str, str] = os.environ):
        settings_path = environ.get(SETTINGS_ENVVAR)
        if not settings_path:
            return cls()
        return cls.load(pathlib.Path(settings_path))


settings_converter.register_structure_hook(
    Settings, make_dict_structure_fn(Settings, settings_converter, _cattrs_forbid_extra_keys=True)
)
