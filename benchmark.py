"""Pushes random data through a running forwarder whose target is ``echo.py``
and reports the echoed throughput.

    python echo.py --port 9001
    python -m tcpforward 127.0.0.1:9001 -L 9000
    python benchmark.py --port 9000
"""
import string
import random
import asyncio

import tap
from tqdm import tqdm


class Args(tap.Tap):
    host: str = "127.0.0.1"
    port: int = 9000
    packet_size: int = 1024 ** 2
    total_bytes: int = 1024 ** 3
    in_flight: int = 100
    """Maximum number of packets sent but not yet echoed back."""


async def write(writer: asyncio.StreamWriter, sem: asyncio.Semaphore, args: Args):
    data = "".join(random.choices(string.ascii_letters, k=args.packet_size)).encode()

    sent = 0
    while sent < args.total_bytes:
        await sem.acquire()
        writer.write(data)
        await writer.drain()
        sent += len(data)


async def read(reader: asyncio.StreamReader, sem: asyncio.Semaphore, args: Args):
    received = 0
    pending = 0
    with tqdm(desc="Bytes received", total=args.total_bytes, unit="B", unit_scale=True) as pbar:
        while received < args.total_bytes:
            data = await reader.read(args.packet_size)
            if not data:
                break

            pending += len(data)
            received += len(data)
            pbar.update(len(data))

            # One permit per fully echoed packet.
            while pending >= args.packet_size:
                pending -= args.packet_size
                sem.release()
    print("done")


async def main(args: Args):
    reader, writer = await asyncio.open_connection(args.host, args.port)
    sem = asyncio.Semaphore(args.in_flight)

    await asyncio.gather(write(writer, sem, args), read(reader, sem, args))

    writer.close()
    await writer.wait_closed()


if __name__ == "__main__":
    args = Args(underscores_to_dashes=True).parse_args()
    asyncio.run(main(args))
