import asyncio
import sys

import tap

from tcpforward.logging import Recorder
from tcpforward.dispatcher import Dispatcher
from tcpforward.common import (
    Endpoint,
    GenericException,
    parse_listen_address,
    parse_target_address,
)


class Args(tap.Tap):

    target: str
    """Target address to forward traffic to (ip:port)."""

    listen: str
    """Listen address and port. Either a bare port (binds 0.0.0.0) or ip:port."""

    def configure(self):
        self.add_argument("target")
        self.add_argument("-L", "--listen")


async def main(listen: Endpoint, target: Endpoint, recorder: Recorder):
    async with Dispatcher(listen, target, recorder) as dispatcher:
        palette = recorder.palette
        recorder.announce(
            f"{palette.paint('forward:', palette.BLUE, palette.BOLD)} "
            f"{dispatcher.address} -> {target}",
        )
        recorder.announce(
            f"{palette.paint('*', palette.BLUE, palette.BOLD)} "
            f"continuously recv listening on {dispatcher.address}",
        )
        await dispatcher.serve_forever()


def run(argv: list[str] | None = None):
    args = Args(underscores_to_dashes=True).parse_args(argv)
    recorder = Recorder.create()

    try:
        target = parse_target_address(args.target)
        listen = parse_listen_address(args.listen)
        asyncio.run(main(listen, target, recorder))
    except GenericException as e:
        recorder.error(None, e.message)
        sys.exit(1)
    except KeyboardInterrupt:
        recorder.record(None, "interrupted, shutting down")
        sys.exit(130)


if __name__ == "__main__":
    run()
