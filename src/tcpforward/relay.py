import asyncio

from tcpforward.logging import get_logger, Palette, Recorder
from tcpforward.common import (
    Constants,
    ConnectError,
    Direction,
    Endpoint,
    OutcomeKind,
    RelayOutcome,
    TransferError,
    close_writer,
    peer_address,
)

LOGGER = get_logger(__name__)


class Relay:
    """Forwards one accepted connection to the target.

    ``run`` connects to the target, copies bytes in both directions and tears
    the session down as soon as either direction ends. There are no retries;
    every failure ends the session.
    """

    def __init__(
        self,
        recorder: Recorder,
        *,
        chunk_size: int = Constants.CHUNK_SIZE,
        close_grace_period: float = Constants.CLOSE_GRACE_PERIOD,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self._recorder = recorder
        self._chunk_size = chunk_size
        self._close_grace_period = close_grace_period

    async def _copy(
        self,
        session_id: int,
        direction: Direction,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        flow: str,
        outcome: RelayOutcome,
    ):
        while True:
            try:
                data = await reader.read(self._chunk_size)

                if not data:
                    return

                writer.write(data)
                await writer.drain()
            except OSError as e:
                raise TransferError(direction, e) from e

            outcome.transferred[direction] += len(data)
            size = self._recorder.palette.paint(f"{len(data)} bytes", Palette.BRIGHT_BLACK)
            self._recorder.record(
                session_id,
                f"{flow} - {size}",
                direction=direction,
                nbytes=len(data),
            )

    async def _connect(
        self, target: Endpoint
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.open_connection(target.host, target.port)
        except OSError as e:
            raise ConnectError(f"failed to connect to target {target}: {e}") from e

    async def run(
        self,
        session_id: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        target: Endpoint,
    ) -> RelayOutcome:
        """Relays the inbound connection ``reader``/``writer`` to ``target``.

        Parameters
        ----------
        session_id : int
            Id used to tag every recorded event of this session.
        reader, writer : asyncio.StreamReader, asyncio.StreamWriter
            The accepted inbound connection. It is closed when this returns.
        target : Endpoint
            Where to open the outbound connection.

        Returns
        -------
        RelayOutcome
            ``CONNECT_FAILED`` if the target could not be reached, otherwise
            ``CLEAN_EOF`` or ``TRANSFER_ERROR`` for the direction that ended
            first.
        """

        try:
            target_reader, target_writer = await self._connect(target)
        except ConnectError as e:
            LOGGER.debug("Session %d: %s", session_id, e.message)
            await close_writer(writer)
            return RelayOutcome(OutcomeKind.CONNECT_FAILED, cause=e.__cause__)
        except BaseException:
            await close_writer(writer)
            raise

        client = peer_address(writer)
        remote = peer_address(target_writer)
        outcome = RelayOutcome(OutcomeKind.CLEAN_EOF)

        # Insertion order decides which direction is reported when both end at once.
        tasks = {
            asyncio.create_task(
                self._copy(
                    session_id,
                    Direction.INBOUND_TO_OUTBOUND,
                    reader,
                    target_writer,
                    self._recorder.palette.flow(session_id, client, remote, True),
                    outcome,
                )
            ): Direction.INBOUND_TO_OUTBOUND,
            asyncio.create_task(
                self._copy(
                    session_id,
                    Direction.OUTBOUND_TO_INBOUND,
                    target_reader,
                    writer,
                    self._recorder.palette.flow(session_id, client, remote, False),
                    outcome,
                )
            ): Direction.OUTBOUND_TO_INBOUND,
        }

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self._teardown(tasks, writer, target_writer)

        finished = next(task for task in tasks if task in done)
        outcome.direction = tasks[finished]

        error = finished.exception()
        if error is not None:
            if not isinstance(error, TransferError):
                raise error
            outcome.kind = OutcomeKind.TRANSFER_ERROR
            outcome.cause = error.cause
            self._recorder.error(session_id, error.message, direction=outcome.direction)

        self._recorder.record(
            session_id,
            f"session closed ({outcome.direction.description} "
            f"{'ended' if outcome.ok else 'failed'})",
            direction=outcome.direction,
        )
        return outcome

    async def _teardown(
        self,
        tasks: dict[asyncio.Task, Direction],
        writer: asyncio.StreamWriter,
        target_writer: asyncio.StreamWriter,
    ):
        # Closing both transports wakes up whichever loop is still blocked.
        await asyncio.gather(
            close_writer(writer, self._close_grace_period),
            close_writer(target_writer, self._close_grace_period),
        )

        pending = [task for task in tasks if not task.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=self._close_grace_period)
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in tasks:
            if task.cancelled() or task.exception() is None:
                continue
            LOGGER.debug("Copy task %s ended with %r.", tasks[task], task.exception())
