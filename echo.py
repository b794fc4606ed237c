import asyncio
import tap


class Args(tap.Tap):
    host: str = "127.0.0.1"
    port: int = 9001


async def client_callback(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    peer = writer.get_extra_info("peername")
    print(f"new connection from {peer}")
    while True:
        data = await reader.read(8192)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        print(f"{peer}: echoed {len(data)} bytes")
    writer.close()
    print(f"connection from {peer} closed")


async def main(args: Args):
    server = await asyncio.start_server(client_callback, args.host, args.port)
    print(f"echoing on {args.host}:{args.port}")
    async with server:
        await server.serve_forever()


if __name__ == "__main__":
    args = Args(underscores_to_dashes=True).parse_args()
    asyncio.run(main(args))
