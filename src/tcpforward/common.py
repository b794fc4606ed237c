import asyncio
import dataclasses
import enum
import ipaddress
import itertools
import threading

from .logging import get_logger


LOGGER = get_logger(__name__)


class Constants:

    CHUNK_SIZE = 8192

    ACCEPT_RETRY_DELAY = 1.0
    CLOSE_GRACE_PERIOD = 1.0
    LISTEN_BACKLOG = 100

    UNKNOWN_ADDRESS = "unknown"
    WILDCARD_HOST = "0.0.0.0"


class GenericException(Exception):
    def __init__(self, msg: str):
        super().__init__(msg)
        self._msg = msg

    @property
    def message(self) -> str:
        return self._msg


class AddressParseError(GenericException):
    pass


class BindError(GenericException):
    pass


class AcceptError(GenericException):
    pass


class ConnectError(GenericException):
    pass


class AddressUnavailable(GenericException):
    pass


class Direction(enum.Enum):
    INBOUND_TO_OUTBOUND = "inbound->outbound"
    OUTBOUND_TO_INBOUND = "outbound->inbound"

    @property
    def description(self) -> str:
        if self is Direction.INBOUND_TO_OUTBOUND:
            return "client to target"
        return "target to client"


class TransferError(GenericException):
    def __init__(self, direction: Direction, cause: BaseException):
        super().__init__(f"error in {direction.description} transfer: {cause}")
        self.direction = direction
        self.cause = cause


@dataclasses.dataclass(frozen=True, slots=True)
class Endpoint:
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class OutcomeKind(enum.Enum):
    CLEAN_EOF = "clean-eof"
    TRANSFER_ERROR = "transfer-error"
    CONNECT_FAILED = "connect-failed"


@dataclasses.dataclass(slots=True)
class RelayOutcome:
    kind: OutcomeKind
    direction: Direction | None = None
    cause: BaseException | None = None
    transferred: dict[Direction, int] = dataclasses.field(
        default_factory=lambda: {direction: 0 for direction in Direction}
    )

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.CLEAN_EOF


class SessionCounter:
    """Hands out session ids, starting at 1. Ids are strictly increasing and
    never reused, also when ``next`` is called from several threads."""

    def __init__(self, start: int = 1):
        self._lock = threading.Lock()
        self._count = itertools.count(start)

    def next(self) -> int:
        with self._lock:
            return next(self._count)


def _split_host_port(text: str) -> tuple[str, str]:
    if text.startswith("["):
        host, sep, port = text[1:].partition("]:")
        if not sep:
            raise AddressParseError(f"failed to parse {text!r} as ip:port")
        return host, port

    host, sep, port = text.rpartition(":")
    if not sep:
        raise AddressParseError(f"failed to parse {text!r} as ip:port")
    return host, port


def _parse_port(text: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise AddressParseError(f"failed to parse port number {text!r}")
    port = int(text)
    if port > 65535:
        raise AddressParseError(f"port number {port} out of range")
    return port


def parse_target_address(text: str) -> Endpoint:
    """Parses a literal ``ip:port`` address. IPv6 hosts must be bracketed,
    e.g. ``[::1]:8080``. Host names are not resolved.

    Raises
    ------
    AddressParseError
        If ``text`` is not a valid ``ip:port`` pair.
    """

    host, port = _split_host_port(text.strip())
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise AddressParseError(f"invalid address: {text}") from None

    # Brackets are required around IPv6 hosts and not allowed around IPv4 ones.
    if (ip.version == 6) != text.strip().startswith("["):
        raise AddressParseError(f"invalid address: {text}")

    return Endpoint(str(ip), _parse_port(port))


def parse_listen_address(text: str) -> Endpoint:
    """Parses the listen argument, either ``ip:port`` or a bare port. A bare
    port binds to the wildcard address ``0.0.0.0``."""

    text = text.strip()
    if ":" in text:
        return parse_target_address(text)
    return Endpoint(Constants.WILDCARD_HOST, _parse_port(text))


def format_address(address) -> str:
    if not isinstance(address, tuple) or len(address) < 2:
        raise AddressUnavailable(f"unsupported socket address {address!r}")
    return str(Endpoint(address[0], address[1]))


def peer_address(writer: asyncio.StreamWriter) -> str:
    try:
        return format_address(writer.get_extra_info("peername"))
    except AddressUnavailable as e:
        LOGGER.debug("Peer address unavailable: %s", e.message)
        return Constants.UNKNOWN_ADDRESS


async def close_writer(
    writer: asyncio.StreamWriter, timeout: float = Constants.CLOSE_GRACE_PERIOD
):
    """Closes ``writer``, flushing what is buffered. A peer that does not read
    within ``timeout`` seconds gets the connection aborted instead."""

    if not writer.is_closing():
        writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout)
    except asyncio.TimeoutError:
        LOGGER.debug("Connection did not close in time, aborting.")
        writer.transport.abort()
    except OSError as e:
        LOGGER.debug("Error while closing connection: %s", e)
