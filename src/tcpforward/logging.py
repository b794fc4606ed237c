import datetime
import logging
import os
import sys
from typing import TextIO


SESSION_LOGGER_NAME = "tcpforward.session"


def get_logger(name: str, level: int = logging.WARNING) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class Palette:
    """ANSI coloring for terminal output. A disabled palette returns text
    untouched, so the same formatting code serves pipes and log files."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BRIGHT_BLACK = "\033[90m"

    SESSION_COLORS = (BLUE, GREEN, YELLOW, MAGENTA, CYAN, WHITE)

    UNKNOWN = "unknown"

    def __init__(self, enabled: bool):
        self.enabled = enabled

    @classmethod
    def detect(cls, stream: TextIO | None = None) -> "Palette":
        """Enables colors when ``stream`` (stdout by default) is a terminal and
        ``NO_COLOR`` is not set."""

        if stream is None:
            stream = sys.stdout
        isatty = getattr(stream, "isatty", None)
        return cls(bool(isatty and isatty()) and "NO_COLOR" not in os.environ)

    def paint(self, text: str, *codes: str) -> str:
        if not self.enabled or not codes:
            return text
        return "".join(codes) + text + self.RESET

    def session(self, session_id: int, text: str) -> str:
        return self.paint(text, self.SESSION_COLORS[session_id % len(self.SESSION_COLORS)])

    def session_tag(self, session_id: int) -> str:
        return self.session(session_id, f"[{session_id}]")

    def flow(self, session_id: int, client: str, target: str, forward: bool) -> str:
        """Renders ``client >>> target`` for client to target traffic and
        ``client <<< target`` (dimmed) for the way back."""

        if client == self.UNKNOWN:
            client = self.paint(client, self.RED, self.BOLD)
        else:
            client = self.paint(self.session(session_id, client), self.BOLD)

        if target == self.UNKNOWN:
            target = self.paint(target, self.RED, self.DIM, self.BOLD)
        else:
            target = self.paint(target, self.BRIGHT_BLACK, self.BOLD)

        if forward:
            return f"{client} {self.paint('>>>', self.BLUE)} {target}"
        return self.paint(f"{client} {self.paint('<<<', self.CYAN)} {target}", self.DIM)


class SessionFormatter(logging.Formatter):
    """Formats session records.

    Events look like ``2024-01-01T12:00:00.000Z [3] message``, warnings and
    errors like ``[3] warning: message``. The ``[id]`` tag is left out for
    records that do not belong to a session.
    Records flagged ``plain`` are written as the bare message.
    """

    def __init__(self, palette: Palette):
        super().__init__()
        self.palette = palette

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        created = datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc)
        return created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z"

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "plain", False):
            return record.getMessage()

        parts: list[str] = []

        if record.levelno < logging.WARNING:
            parts.append(self.palette.paint(self.formatTime(record), self.palette.DIM))

        session_id = getattr(record, "session_id", None)
        if session_id is not None:
            parts.append(self.palette.session_tag(session_id))

        if record.levelno >= logging.ERROR:
            parts.append(self.palette.paint("error:", self.palette.RED, self.palette.BOLD))
        elif record.levelno >= logging.WARNING:
            parts.append(self.palette.paint("warning:", self.palette.YELLOW, self.palette.BOLD))

        parts.append(record.getMessage())
        text = " ".join(parts)

        if record.exc_info:
            text = text + "\n" + self.formatException(record.exc_info)
        return text


class _BelowLevel(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self._level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self._level


class Recorder:
    """Reports session lifecycle events.

    Every call is optionally tagged with a session id, which is attached to
    the log record as ``session_id`` together with any extra keyword fields.
    """

    def __init__(self, logger: logging.Logger, palette: Palette | None = None):
        self._logger = logger
        self.palette = palette if palette is not None else Palette(False)

    @classmethod
    def create(
        cls,
        color: bool | None = None,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> "Recorder":
        """Configures the session logger: events go to stdout, warnings and
        errors to stderr. Meant to be called once at startup."""

        if stdout is None:
            stdout = sys.stdout
        if stderr is None:
            stderr = sys.stderr

        palette = Palette.detect(stdout) if color is None else Palette(color)
        formatter = SessionFormatter(palette)

        logger = logging.getLogger(SESSION_LOGGER_NAME)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False

        out_handler = logging.StreamHandler(stdout)
        out_handler.addFilter(_BelowLevel(logging.WARNING))
        out_handler.setFormatter(formatter)
        logger.addHandler(out_handler)

        err_handler = logging.StreamHandler(stderr)
        err_handler.setLevel(logging.WARNING)
        err_handler.setFormatter(formatter)
        logger.addHandler(err_handler)

        return cls(logger, palette)

    def _log(self, level: int, session_id: int | None, message: str, fields: dict):
        self._logger.log(level, message, extra={"session_id": session_id, **fields})

    def record(self, session_id: int | None, message: str, **fields):
        self._log(logging.INFO, session_id, message, fields)

    def announce(self, message: str):
        """Writes a startup banner line, without timestamp or session tag."""
        self._log(logging.INFO, None, message, {"plain": True})

    def warning(self, session_id: int | None, message: str, **fields):
        self._log(logging.WARNING, session_id, message, fields)

    def error(self, session_id: int | None, message: str, **fields):
        self._log(logging.ERROR, session_id, message, fields)
