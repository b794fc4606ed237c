"""Shared fixtures: stand-in target servers, a relay harness and a recorder
whose records are captured by ``caplog``."""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
from typing import Callable

import pytest
import pytest_asyncio

from tcpforward.common import Endpoint, RelayOutcome
from tcpforward.logging import Palette, Recorder
from tcpforward.relay import Relay

RECORDER_LOGGER_NAME = "tcpforward.test"


class TargetServer:
    """Target stand-in on an ephemeral port.

    Echoes everything back unless ``echo`` is false, in which case it only
    collects. ``greeting`` is sent as soon as a client connects. A non-empty
    ``flood`` is written over and over until the connection breaks.
    """

    def __init__(self, *, echo: bool = True, greeting: bytes = b"", flood: bytes = b""):
        self.echo = echo
        self.greeting = greeting
        self.flood = flood
        self.received = bytearray()
        self.writers: list[asyncio.StreamWriter] = []
        self.connected = asyncio.Event()
        self.eof = asyncio.Event()
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> "TargetServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    @property
    def endpoint(self) -> Endpoint:
        host, port = self._server.sockets[0].getsockname()[:2]
        return Endpoint(host, port)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.writers.append(writer)
        self.connected.set()
        try:
            if self.greeting:
                writer.write(self.greeting)
                await writer.drain()
            while self.flood:
                writer.write(self.flood)
                await writer.drain()
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received += data
                if self.echo:
                    writer.write(data)
                    await writer.drain()
        except OSError:
            pass
        finally:
            self.eof.set()
            writer.close()

    async def close(self):
        self._server.close()
        for writer in self.writers:
            writer.transport.abort()
        await self._server.wait_closed()


class RelayHarness:
    """Runs ``Relay.run`` for every connection made to it and queues the
    outcomes."""

    def __init__(self, relay: Relay, target: Endpoint):
        self.relay = relay
        self.target = target
        self.outcomes: asyncio.Queue[RelayOutcome] = asyncio.Queue()
        self._session_id = 0
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> "RelayHarness":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._session_id += 1
        outcome = await self.relay.run(self._session_id, reader, writer, self.target)
        await self.outcomes.put(outcome)

    async def connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        host, port = self._server.sockets[0].getsockname()[:2]
        return await asyncio.open_connection(host, port)

    async def outcome(self, timeout: float = 5.0) -> RelayOutcome:
        return await asyncio.wait_for(self.outcomes.get(), timeout)

    async def close(self):
        self._server.close()
        await self._server.wait_closed()


def reset_connection(writer: asyncio.StreamWriter):
    """Closes the connection with a TCP RST instead of a FIN."""

    sock = writer.get_extra_info("socket")
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.transport.abort()


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def session_records(
    caplog: pytest.LogCaptureFixture, session_id: int | None = None
) -> list[logging.LogRecord]:
    return [
        record
        for record in caplog.records
        if record.name == RECORDER_LOGGER_NAME
        and (session_id is None or record.session_id == session_id)
    ]


def chunk_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [record for record in session_records(caplog) if hasattr(record, "nbytes")]


@pytest.fixture
def recorder(caplog: pytest.LogCaptureFixture) -> Recorder:
    caplog.set_level(logging.INFO, logger=RECORDER_LOGGER_NAME)
    return Recorder(logging.getLogger(RECORDER_LOGGER_NAME), Palette(False))


@pytest.fixture
def unused_endpoint() -> Endpoint:
    """An address nothing listens on."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        host, port = sock.getsockname()
    return Endpoint(host, port)


@pytest_asyncio.fixture
async def echo_target():
    server = await TargetServer().start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def sink_target():
    server = await TargetServer(echo=False).start()
    yield server
    await server.close()
