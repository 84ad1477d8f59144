# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import logging
import os
import pathlib
import signal
import typing
from contextlib import aclosing

import trio
import tricycle
from trio_util import AsyncBool, move_on_when

from .broadcast import Broadcaster, ClientAcceptor, SubscriberRegistry, open_unix_listener
from .classifier import Classifier
from .codec import LineReceiveChannel, decode
from .commontypes import ConnectError, ExitCode, ParseError
from .relaytypes import Event

if typing.TYPE_CHECKING:
    from .settings import Settings

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGHUP, signal.SIGTERM, signal.SIGQUIT)


async def connect_source(path: pathlib.Path) -> trio.SocketStream:
    try:
        stream = await trio.open_unix_socket(os.fspath(path))
    except OSError as exc:
        raise ConnectError(f"Couldn't connect to {path}: {exc}") from exc
    logger.info("Connected to '%s', waiting for messages...", path)
    return stream


class SourceReader:
    def __init__(self, lines: trio.abc.ReceiveChannel[str]):
        self.lines = lines

    async def pump(self, sink: trio.MemorySendChannel[Event]):
        async with aclosing(self.lines), aclosing(sink):
            async for line in self.lines:
                logger.info("%s", line)
                if not line.strip():
                    continue
                try:
                    event = decode(line)
                except ParseError as exc:
                    logger.error("%s", exc)
                    continue
                await sink.send(event)
        logger.info("Source closed")


class ShutdownCoordinator:
    """Collects stop requests and decides the exit code.

    The first request wins; later ones (a second Ctrl-C, a pipeline stage noticing its input went away
    during shutdown) are only logged.
    """

    stopping: AsyncBool
    exit_code: ExitCode

    def __init__(self):
        self.stopping = AsyncBool(False)
        self.exit_code = ExitCode.OK

    def request_stop(self, exit_code: ExitCode = ExitCode.OK, reason: str = "requested") -> bool:
        if self.stopping.value:
            logger.debug("Already stopping; ignoring stop (%s)", reason)
            return False
        logger.info("Stopping: %s", reason)
        self.exit_code = exit_code
        self.stopping.value = True
        return True

    async def listen_for_signals(self, *, task_status=trio.TASK_STATUS_IGNORED):
        with trio.open_signal_receiver(*TERMINATION_SIGNALS) as signals:
            task_status.started()
            received = 0
            async for signum in signals:
                received += 1
                name = signal.Signals(signum).name
                logger.debug("Received signal %s, %d time(s)", name, received)
                self.request_stop(ExitCode.OK, f"got {name}")

    async def run_until_stopped(self, name: str, fn: typing.Callable[..., typing.Awaitable[None]], *args):
        async with move_on_when(self.stopping.wait_value, True):
            await fn(*args)
        if not self.stopping.value:
            logger.warning("%s exited unexpectedly", name)
            self.request_stop(ExitCode.CHANNEL_CLOSED, f"{name} exited")


class Relay:
    def __init__(self, settings: Settings, coordinator: typing.Optional[ShutdownCoordinator] = None):
        self.settings = settings
        self.coordinator = coordinator if coordinator is not None else ShutdownCoordinator()
        self.registry = SubscriberRegistry()

    async def run(self, *, task_status=trio.TASK_STATUS_IGNORED) -> ExitCode:
        output_path = self.settings.output_path
        try:
            source_stream = await connect_source(self.settings.input_path)
        except ConnectError as exc:
            logger.error("%s", exc)
            return ExitCode.STARTUP_FAILED
        try:
            listener = await open_unix_listener(output_path)
        except ConnectError as exc:
            logger.error("%s", exc)
            await source_stream.aclose()
            return ExitCode.STARTUP_FAILED

        raw_send_channel, raw_receive_channel = trio.open_memory_channel[Event](0)
        classified_send_channel, classified_receive_channel = trio.open_memory_channel[Event](0)
        reader = SourceReader(LineReceiveChannel(source_stream))
        classifier = Classifier.from_settings(self.settings)
        broadcaster = Broadcaster(self.registry)
        acceptor = ClientAcceptor(listener, self.registry, self.settings.client_queue_size)

        try:
            async with tricycle.open_service_nursery() as nursery:
                await nursery.start(self.coordinator.listen_for_signals)
                await nursery.start(self.registry.run)
                await nursery.start(acceptor.run)
                task_status.started()
                async with trio.open_nursery() as core:
                    core.start_soon(self.coordinator.run_until_stopped, "reader", reader.pump, raw_send_channel)
                    core.start_soon(
                        self.coordinator.run_until_stopped,
                        "classifier",
                        classifier.pump,
                        raw_receive_channel,
                        classified_send_channel,
                    )
                    core.start_soon(
                        self.coordinator.run_until_stopped, "broadcaster", broadcaster.pump, classified_receive_channel
                    )
                # the core has stopped; take down the acceptor, clients, registry and signal listener
                nursery.cancel_scope.cancel()
        finally:
            logger.info("drop socket file '%s'", output_path)
            output_path.unlink(missing_ok=True)
        logger.info("Bye!")
        return self.coordinator.exit_code
