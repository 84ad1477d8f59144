# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import argparse
import datetime
import logging
import os
import pathlib
import typing
from contextlib import aclosing

import trio
import tricycle
from trio_util import move_on_when

from .app import load_settings
from .broadcast import Broadcaster, ClientAcceptor, SubscriberRegistry, open_unix_listener
from .codec import LineReceiveChannel, encode
from .commontypes import ConnectError, ExitCode
from .relay import ShutdownCoordinator
from .relaytypes import Event

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = pathlib.Path("test")
BURST_INTERVAL = datetime.timedelta(milliseconds=80)
MAX_BACKOFF = datetime.timedelta(seconds=5)

SHORTCUTS = {
    "s": [encode(Event(id="qwe", repeat=0, name="KEY_UP", device="device"))],
    "a": [encode(Event(id="qwe", repeat=i, name="KEY_UP", device="device")) for i in range(10)],
}


async def run_until_signalled(fn: typing.Callable[..., typing.Awaitable[typing.Any]], *args):
    coordinator = ShutdownCoordinator()
    async with tricycle.open_service_nursery() as nursery:
        await nursery.start(coordinator.listen_for_signals)
        async with move_on_when(coordinator.stopping.wait_value, True):
            await fn(*args)
        nursery.cancel_scope.cancel()
    logger.info("Bye!")


### Listener: print what the relay sends, reconnecting as needed


def backoff_delay(failures: int) -> datetime.timedelta:
    return min(datetime.timedelta(milliseconds=500 + failures**2 * 100), MAX_BACKOFF)


async def print_events(path: pathlib.Path):
    failures = 0
    while True:
        logger.info("Try connect")
        try:
            stream = await trio.open_unix_socket(os.fspath(path))
        except OSError as exc:
            failures += 1
            delay = backoff_delay(failures)
            logger.error("Couldn't connect to %s, fail=%d: %r", path, failures, exc)
            logger.info("Waiting %s", delay)
            await trio.sleep(delay.total_seconds())
            continue
        failures = 0
        logger.info("Connected to '%s', waiting for messages...", path)
        async with LineReceiveChannel(stream) as lines:
            async for line in lines:
                print(line, flush=True)
        logger.info("Exit socket stream")


listen_parser = argparse.ArgumentParser(prog="irrelay-listen", description="Listens for socket events and prints them to stdout")
listen_parser.add_argument("-i", "--input", dest="input_path", type=pathlib.Path, default=DEFAULT_SOCKET_PATH, metavar="FILE")


def listen_cli():
    parsed = listen_parser.parse_args()
    if load_settings() is None:
        return int(ExitCode.STARTUP_FAILED)
    logger.info("Starting listener")
    trio.run(run_until_signalled, print_events, parsed.input_path)
    return int(ExitCode.OK)


### Injector: serve stdin lines to clients, standing in for lircd


def expand_input(line: str) -> list[str]:
    return SHORTCUTS.get(line, [line])


class Injector:
    def __init__(self, output_path: pathlib.Path, burst_interval: datetime.timedelta = BURST_INTERVAL):
        self.output_path = output_path
        self.burst_interval = burst_interval
        self.registry = SubscriberRegistry()
        self.broadcaster = Broadcaster(self.registry)

    async def send_line(self, raw: str):
        line = raw.strip()
        if not line:
            return
        logger.info("Got from stdin %s", line)
        for i, expanded in enumerate(expand_input(line)):
            if i:
                await trio.sleep(self.burst_interval.total_seconds())
            self.broadcaster.broadcast_line(expanded)

    async def run(self, lines: trio.abc.ReceiveChannel[str], *, task_status=trio.TASK_STATUS_IGNORED):
        await self.serve(await open_unix_listener(self.output_path), lines, task_status=task_status)

    async def serve(self, listener: trio.SocketListener, lines: trio.abc.ReceiveChannel[str], *, task_status=trio.TASK_STATUS_IGNORED):
        try:
            async with tricycle.open_service_nursery() as nursery:
                await nursery.start(self.registry.run)
                await nursery.start(ClientAcceptor(listener, self.registry).run)
                task_status.started()
                async with aclosing(lines):
                    async for raw in lines:
                        await self.send_line(raw)
                logger.info("Input closed")
                nursery.cancel_scope.cancel()
        finally:
            logger.info("Removing socket file '%s'", self.output_path)
            self.output_path.unlink(missing_ok=True)


async def inject(output_path: pathlib.Path, lines: trio.abc.ReceiveChannel[str]) -> ExitCode:
    # bind before anything else starts, so a bad path is a plain startup failure
    try:
        listener = await open_unix_listener(output_path)
    except ConnectError as exc:
        logger.error("%s", exc)
        await lines.aclose()
        return ExitCode.STARTUP_FAILED
    await run_until_signalled(Injector(output_path).serve, listener, lines)
    return ExitCode.OK


inject_parser = argparse.ArgumentParser(prog="irrelay-inject", description="Sends stdin lines to unix socket clients")
inject_parser.add_argument("-o", "--output", dest="output_path", type=pathlib.Path, default=DEFAULT_SOCKET_PATH, metavar="FILE")


def inject_cli():
    parsed = inject_parser.parse_args()
    if load_settings() is None:
        return int(ExitCode.STARTUP_FAILED)
    logger.info("Starting sender")

    async def runner():
        return await inject(parsed.output_path, LineReceiveChannel(trio.lowlevel.FdStream(os.dup(0))))

    return int(trio.run(runner))
