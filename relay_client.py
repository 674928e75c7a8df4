#!/usr/bin/env python3
"""Terminal client for the relay.

Usage:
    client = RelayClient()
    await client.connect()
    await client.send("hello")
    msg = await client.receive()  # blocks until a frame arrives

Or from a shell:
    python3 relay_client.py --port 6000
    type lines to send them, :quit or :q to leave
"""
import asyncio, argparse, logging, sys
from typing import Awaitable, Callable, Optional

from relay_frame import MSG_SIZE, DecodeError, encode, decode

log = logging.getLogger('relay_client')

HOST = '127.0.0.1'
PORT = 6000
QUIT_COMMANDS = (':quit', ':q')


class RelayClient:
    def __init__(self, host: str = HOST, port: int = PORT):
        self.host = host
        self.port = port
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._msg_queue: asyncio.Queue = asyncio.Queue()
        self._connected = asyncio.Event()
        self._read_task: Optional[asyncio.Task] = None

    async def connect(self):
        """Open the connection and start the background reader."""
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        self._connected.set()
        self._read_task = asyncio.ensure_future(self._read_loop())

    async def _read_loop(self):
        try:
            while True:
                try:
                    frame = await self._reader.readexactly(MSG_SIZE)
                except (asyncio.IncompleteReadError, OSError):
                    break
                try:
                    text = decode(frame)
                except DecodeError as e:
                    log.warning('%s', e)
                    continue
                await self._msg_queue.put(text)
        finally:
            self._connected.clear()
            await self._msg_queue.put(None)

    async def send(self, text: str):
        """Send one message as a single frame."""
        if self._writer is None or self._writer.is_closing():
            raise ConnectionError('not connected')
        self._writer.write(encode(text))
        await self._writer.drain()

    async def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next message, or None once the server has closed the connection."""
        if timeout is not None:
            msg = await asyncio.wait_for(self._msg_queue.get(), timeout)
        else:
            msg = await self._msg_queue.get()
        if msg is None:
            self._msg_queue.put_nowait(None)  # keep reporting the disconnect
        return msg

    def has_messages(self) -> bool:
        return not self._msg_queue.empty()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def close(self):
        if self._writer is not None:
            self._writer.close()
        if self._read_task is not None:
            await self._read_task
            self._read_task = None


# ============ TERMINAL ============

async def chat(client: RelayClient, read_line: Callable[[], Awaitable[str]]) -> int:
    """Send lines from read_line until :quit, end of input, or a failed write.

    Returns the number of messages sent."""
    sent = 0
    while True:
        line = await read_line()
        if not line:
            break
        msg = line.rstrip('\r\n')
        if msg in QUIT_COMMANDS:
            break
        try:
            await client.send(msg)
        except ConnectionError:
            print('Failed to write to the server')
            break
        sent += 1
    return sent


async def print_incoming(client: RelayClient):
    while True:
        msg = await client.receive()
        if msg is None:
            print('Connection to the server closed')
            return
        print(f'Received: {msg!r}')


async def run(host: str, port: int) -> int:
    client = RelayClient(host, port)
    try:
        await client.connect()
    except OSError as e:
        print(f'Could not connect to {host}:{port}: {e}')
        return 1
    print('Connected to the server!')

    printer = asyncio.ensure_future(print_incoming(client))
    loop = asyncio.get_running_loop()

    async def read_line():
        return await loop.run_in_executor(None, sys.stdin.readline)

    try:
        await chat(client, read_line)
    finally:
        printer.cancel()
        await client.close()
    return 0


def main(argv=None):
    p = argparse.ArgumentParser(description='Chat through a relay server')
    p.add_argument('--host', default=HOST)
    p.add_argument('--port', type=int, default=PORT)
    p.add_argument('-v', '--verbose', action='store_true')
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(name)s] %(message)s')
    try:
        return asyncio.run(run(args.host, args.port))
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
