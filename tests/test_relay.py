# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
import datetime
import os
import pathlib
import signal

import pytest
import trio
import trio.testing

from irrelay.broadcast import open_unix_listener
from irrelay.codec import LineReceiveChannel
from irrelay.commontypes import ExitCode
from irrelay.relay import Relay, ShutdownCoordinator, SourceReader
from irrelay.relaytypes import Event
from irrelay.settings import Settings


def test_first_stop_request_wins():
    coordinator = ShutdownCoordinator()
    assert coordinator.request_stop(ExitCode.CHANNEL_CLOSED, "reader exited")
    assert not coordinator.request_stop(ExitCode.OK, "got SIGTERM")
    assert coordinator.stopping.value
    assert coordinator.exit_code is ExitCode.CHANNEL_CLOSED


async def test_signals_stop_once(nursery: trio.Nursery):
    coordinator = ShutdownCoordinator()
    await nursery.start(coordinator.listen_for_signals)
    os.kill(os.getpid(), signal.SIGHUP)
    with trio.fail_after(5):
        await coordinator.stopping.wait_value(True)
    os.kill(os.getpid(), signal.SIGTERM)
    await trio.sleep(0.1)
    assert coordinator.exit_code is ExitCode.OK


async def test_run_until_stopped_reports_unexpected_exit():
    coordinator = ShutdownCoordinator()

    async def gives_up():
        await trio.sleep(0)

    await coordinator.run_until_stopped("quitter", gives_up)
    assert coordinator.stopping.value
    assert coordinator.exit_code is ExitCode.CHANNEL_CLOSED


async def test_run_until_stopped_cancels_on_stop(nursery: trio.Nursery):
    coordinator = ShutdownCoordinator()
    finished = trio.Event()

    async def forever():
        await trio.sleep_forever()

    async def runner():
        await coordinator.run_until_stopped("forever", forever)
        finished.set()

    nursery.start_soon(runner)
    await trio.sleep(0.01)
    coordinator.request_stop(ExitCode.OK, "test")
    with trio.fail_after(5):
        await finished.wait()
    assert coordinator.exit_code is ExitCode.OK


async def test_source_reader_skips_bad_lines():
    send_stream, receive_stream = trio.testing.memory_stream_pair()
    reader = SourceReader(LineReceiveChannel(receive_stream))
    event_send_channel, event_receive_channel = trio.open_memory_channel(10)
    await send_stream.send_all(b"a 0 KEY_OK remote\n\ngarbage\na zz KEY_OK remote\na 1 KEY_OK remote\n")
    await send_stream.aclose()
    await reader.pump(event_send_channel)
    assert [event async for event in event_receive_channel] == [
        Event(id="a", repeat=0, name="KEY_OK", device="remote"),
        Event(id="a", repeat=1, name="KEY_OK", device="remote"),
    ]


class RelayHarness:
    def __init__(self, tmp_path: pathlib.Path, output_path: pathlib.Path | None = None, **settings):
        self.input_path = tmp_path / "lircd"
        self.output_path = output_path if output_path is not None else tmp_path / "lircd2"
        self.settings = Settings(input_path=self.input_path, output_path=self.output_path, **settings)
        self.relay = Relay(self.settings)
        self.exit_code = None

    async def run_relay(self, *, task_status=trio.TASK_STATUS_IGNORED):
        self.exit_code = await self.relay.run(task_status=task_status)

    async def start(self, nursery: trio.Nursery):
        self.lircd_listener = await open_unix_listener(self.input_path)
        await nursery.start(self.run_relay)
        self.lircd = await self.lircd_listener.accept()

    async def connect_client(self, expected_clients: int):
        client = LineReceiveChannel(await trio.open_unix_socket(os.fspath(self.output_path)))
        with trio.fail_after(5):
            await self.relay.registry.subscribers.wait_value(lambda v: len(v) == expected_clients)
        return client

    async def press(self, *lines: str):
        await self.lircd.send_all("".join(line + "\n" for line in lines).encode())

    async def aclose(self):
        await self.lircd.aclose()
        await self.lircd_listener.aclose()


async def test_relay_end_to_end(tmp_path: pathlib.Path):
    harness = RelayHarness(tmp_path)
    async with trio.open_nursery() as nursery:
        await harness.start(nursery)
        first = await harness.connect_client(1)
        second = await harness.connect_client(2)
        await harness.press("000000037ff07bef 0 KEY_OK remote", "000000037ff07bef 1 KEY_OK remote")
        with trio.fail_after(5):
            assert await first.receive() == "000000037ff07bef 0 KEY_OK remote"
            assert await second.receive() == "000000037ff07bef 0 KEY_OK remote"
        os.kill(os.getpid(), signal.SIGTERM)
        with trio.fail_after(5):
            with pytest.raises(trio.EndOfChannel):
                await first.receive()
    assert harness.exit_code is ExitCode.OK
    assert not harness.output_path.exists()
    await harness.aclose()


async def test_relay_shutdown_discards_pending(tmp_path: pathlib.Path):
    # a long settle interval keeps the press pending until the signal arrives
    harness = RelayHarness(tmp_path, settle_interval=datetime.timedelta(seconds=30))
    async with trio.open_nursery() as nursery:
        await harness.start(nursery)
        client = await harness.connect_client(1)
        await harness.press("000000037ff07bef 0 KEY_OK remote")
        await trio.sleep(0.1)
        os.kill(os.getpid(), signal.SIGINT)
        with trio.fail_after(5):
            with pytest.raises(trio.EndOfChannel):
                await client.receive()
    assert harness.exit_code is ExitCode.OK
    assert not harness.output_path.exists()
    await harness.aclose()


async def test_relay_source_closed(tmp_path: pathlib.Path):
    harness = RelayHarness(tmp_path)
    async with trio.open_nursery() as nursery:
        await harness.start(nursery)
        await harness.aclose()
    assert harness.exit_code is ExitCode.CHANNEL_CLOSED
    assert not harness.output_path.exists()


async def test_relay_cannot_reach_input(tmp_path: pathlib.Path):
    harness = RelayHarness(tmp_path)
    assert await harness.relay.run() is ExitCode.STARTUP_FAILED
    assert not harness.output_path.exists()


async def test_relay_cannot_bind_output(tmp_path: pathlib.Path):
    harness = RelayHarness(tmp_path, output_path=tmp_path / "nowhere" / "lircd2")
    async with await open_unix_listener(harness.input_path):
        assert await harness.relay.run() is ExitCode.STARTUP_FAILED
