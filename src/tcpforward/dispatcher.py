import asyncio
import socket

from tcpforward.logging import get_logger, Recorder
from tcpforward.relay import Relay
from tcpforward.common import (
    AcceptError,
    BindError,
    Constants,
    Endpoint,
    OutcomeKind,
    RelayOutcome,
    SessionCounter,
    format_address,
    AddressUnavailable,
)

LOGGER = get_logger(__name__)


class Dispatcher:
    """Accepts connections on the listen address and starts one relay task per
    connection. Sessions never block the accept loop and their failures never
    reach it."""

    def __init__(
        self,
        listen: Endpoint,
        target: Endpoint,
        recorder: Recorder,
        *,
        relay: Relay | None = None,
        counter: SessionCounter | None = None,
    ):
        self._listen = listen
        self._target = target
        self._recorder = recorder
        self._relay = relay if relay is not None else Relay(recorder)
        self._counter = counter if counter is not None else SessionCounter()

        self._socket: socket.socket | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self.alive_tasks: dict[asyncio.Task[RelayOutcome], int] = {}

    @property
    def address(self) -> Endpoint:
        """The bound listen address, with the real port when bound to port 0."""

        if self._socket is None:
            raise RuntimeError("Dispatcher is not started.")
        return Endpoint(*self._socket.getsockname()[:2])

    @property
    def target(self) -> Endpoint:
        return self._target

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self._listen.host else socket.AF_INET
        try:
            sock = socket.create_server(
                (self._listen.host, self._listen.port),
                family=family,
                backlog=Constants.LISTEN_BACKLOG,
            )
        except OSError as e:
            raise BindError(f"failed to bind to {self._listen}: {e}") from e
        sock.setblocking(False)
        return sock

    async def start(self):
        """Binds the listening socket and starts accepting in the background.

        Raises
        ------
        BindError
            If the listen address cannot be bound.
        """

        if self._socket is not None:
            raise RuntimeError("Dispatcher is already started.")

        self._socket = self._bind()
        LOGGER.info("Listening on %s.", self.address)
        self._accept_task = asyncio.create_task(self._accept_loop())

    async def serve_forever(self):
        if self._accept_task is None:
            await self.start()
        await self._accept_task

    async def _accept(self) -> tuple[socket.socket, str]:
        loop = asyncio.get_running_loop()
        try:
            sock, address = await loop.sock_accept(self._socket)
        except OSError as e:
            raise AcceptError(f"failed to accept connection: {e}") from e

        try:
            peer = format_address(address)
        except AddressUnavailable:
            peer = Constants.UNKNOWN_ADDRESS
        return sock, peer

    async def _accept_loop(self):
        while True:
            try:
                sock, peer = await self._accept()
            except AcceptError as e:
                self._recorder.warning(None, e.message)
                await asyncio.sleep(Constants.ACCEPT_RETRY_DELAY)
                continue

            session_id = self._counter.next()
            self._recorder.record(
                session_id,
                f"{self._recorder.palette.paint('+', self._recorder.palette.GREEN)} "
                f"new connection from {peer}",
            )

            task = asyncio.create_task(self._session(session_id, sock))
            self.alive_tasks[task] = session_id
            task.add_done_callback(lambda done, peer=peer: self._session_done(done, peer))

    async def _session(self, session_id: int, sock: socket.socket) -> RelayOutcome:
        try:
            reader, writer = await asyncio.open_connection(sock=sock)
        except BaseException:
            sock.close()
            raise
        return await self._relay.run(session_id, reader, writer, self._target)

    def _session_done(self, task: asyncio.Task[RelayOutcome], peer: str):
        session_id = self.alive_tasks.pop(task)

        if task.cancelled():
            LOGGER.debug("Session %d cancelled.", session_id)
            return

        error = task.exception()
        if error is not None:
            LOGGER.error("Unexpected error in session %d.", session_id, exc_info=error)
            self._recorder.error(
                session_id,
                f"error handling connection from {peer}: {error!r}",
            )
            return

        outcome = task.result()
        if outcome.kind is OutcomeKind.CONNECT_FAILED:
            self._recorder.error(
                session_id,
                f"error handling connection from {peer}: "
                f"failed to connect to target {self._target}: {outcome.cause}",
                outcome=outcome.kind,
            )
            return

        # Transfer errors were already recorded by the relay.
        self._recorder.record(
            session_id,
            f"{self._recorder.palette.paint('-', self._recorder.palette.RED)} "
            f"connection from {peer} closed",
            outcome=outcome.kind,
        )

    async def close(self):
        """Stops accepting, closes the listening socket and cancels live
        sessions."""

        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        if self._socket is not None:
            self._socket.close()

        sessions = list(self.alive_tasks)
        for task in sessions:
            task.cancel()
        await asyncio.gather(*sessions, return_exceptions=True)

    async def __aenter__(self) -> "Dispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()
