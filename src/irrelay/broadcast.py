# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import logging
import math
import os
import pathlib
import typing
from contextlib import aclosing

import trio
from trio_util import AsyncValue

from .codec import encode
from .commontypes import ConnectError
from .relaytypes import Close, Event, Init, RegistryMessage
from .settings import DEFAULT_CLIENT_QUEUE_SIZE
from .util import remove_stale_socket

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 128


class SubscriberRegistry:
    """Owns the mapping of client id to outbound queue.

    The mapping is only ever changed by the registry's own task, in response to Init and Close
    messages, and every change publishes a new mapping. Readers can iterate whatever mapping they
    fetched without seeing a half-applied change.
    """

    subscribers: AsyncValue[typing.Mapping[int, trio.MemorySendChannel[str]]]

    def __init__(self):
        self.subscribers = AsyncValue({})
        self.control_send_channel, self.control_receive_channel = trio.open_memory_channel[RegistryMessage](math.inf)

    def request(self, message: RegistryMessage):
        try:
            self.control_send_channel.send_nowait(message)
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            logger.debug("Registry already stopped; not delivering %r", message)

    def apply(self, message: RegistryMessage):
        updated = dict(self.subscribers.value)
        match message:
            case Init(client_id=client_id, queue=queue):
                logger.info("Got init: %d", client_id)
                updated[client_id] = queue
            case Close(client_id=client_id):
                logger.info("Got close: %d", client_id)
                queue = updated.pop(client_id, None)
                if queue is None:
                    logger.debug("Client %d was already removed", client_id)
                    return
                queue.close()
            case _:
                raise NotImplementedError(f"Don't know how to handle {type(message)}.")
        self.subscribers.value = updated
        logger.info("Clients: %d", len(updated))

    async def run(self, *, task_status=trio.TASK_STATUS_IGNORED):
        try:
            async with self.control_receive_channel:
                task_status.started()
                async for message in self.control_receive_channel:
                    self.apply(message)
        finally:
            for queue in self.subscribers.value.values():
                queue.close()
            logger.info("Registry exited")


class Broadcaster:
    def __init__(self, registry: SubscriberRegistry):
        self.registry = registry

    def broadcast_line(self, line: str) -> int:
        delivered = 0
        for client_id, queue in self.registry.subscribers.value.items():
            try:
                queue.send_nowait(line)
            except (trio.BrokenResourceError, trio.ClosedResourceError, trio.WouldBlock) as exc:
                logger.error("Can't send to %d. %r", client_id, exc)
                self.registry.request(Close(client_id))
            else:
                logger.debug("send %d", client_id)
                delivered += 1
        return delivered

    def broadcast(self, event: Event) -> int:
        line = encode(event)
        logger.info("Broadcasting %s", line)
        return self.broadcast_line(line)

    async def pump(self, source: trio.MemoryReceiveChannel[Event]):
        try:
            async with aclosing(source):
                async for event in source:
                    self.broadcast(event)
        finally:
            logger.info("Broadcaster exited")


async def open_unix_listener(path: pathlib.Path) -> trio.SocketListener:
    remove_stale_socket(path)
    sock = trio.socket.socket(trio.socket.AF_UNIX, trio.socket.SOCK_STREAM)
    try:
        await sock.bind(os.fspath(path))
        sock.listen(LISTEN_BACKLOG)
    except OSError as exc:
        sock.close()
        raise ConnectError(f"Couldn't bind {path}: {exc}") from exc
    logger.info("Listening on '%s', waiting for clients...", path)
    return trio.SocketListener(sock)


class ClientAcceptor:
    last_client_id: int

    def __init__(self, listener: trio.SocketListener, registry: SubscriberRegistry, queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE):
        self.listener = listener
        self.registry = registry
        self.queue_size = queue_size
        # ids are never reused for the life of the process
        self.last_client_id = 0

    async def serve_client(self, stream: trio.SocketStream, client_id: int):
        queue_send_channel, queue_receive_channel = trio.open_memory_channel[str](self.queue_size)
        logger.info("connected %d", client_id)
        self.registry.request(Init(client_id=client_id, queue=queue_send_channel))
        try:
            async with stream, queue_receive_channel:
                async for line in queue_receive_channel:
                    try:
                        await stream.send_all((line + "\n").encode())
                    except (trio.BrokenResourceError, trio.ClosedResourceError) as exc:
                        logger.warning("Can't write to %d. %r", client_id, exc)
                        break
                    logger.debug("Wrote %s to %d", line, client_id)
        finally:
            logger.info("disconnected %d", client_id)
            self.registry.request(Close(client_id=client_id))

    async def run(self, *, task_status=trio.TASK_STATUS_IGNORED):
        async with self.listener, trio.open_nursery() as nursery:
            task_status.started()
            while True:
                try:
                    stream = await self.listener.accept()
                except (OSError, trio.ClosedResourceError) as exc:
                    logger.error("Error accepting clients: %r", exc)
                    break
                self.last_client_id += 1
                nursery.start_soon(self.serve_client, stream, self.last_client_id)
        logger.info("Acceptor exited")
