#!/usr/bin/env python3
"""Minimal TCP broadcast relay.

Every 32-byte frame a peer sends is relayed to all connected peers,
the sender included. Reads run in one task per connection; a single
coordination loop owns the peer list and does every write."""

import asyncio, argparse, logging, sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from relay_frame import MSG_SIZE, DecodeError, encode, decode

log = logging.getLogger('relay')

HOST = '127.0.0.1'
PORT = 6000
POLL_INTERVAL = 0.1   # seconds between coordination ticks
WRITE_TIMEOUT = 1.0   # seconds one peer may hold up a fan-out
MAX_BUFFER = 64 * 1024  # unsent bytes before a peer counts as dead


@dataclass
class RelayConfig:
    host: str = HOST
    port: int = PORT
    ws_port: Optional[int] = None  # None disables the WebSocket listener
    poll_interval: float = POLL_INTERVAL
    write_timeout: float = WRITE_TIMEOUT
    max_buffer: int = MAX_BUFFER
    max_pending: int = 0  # 0 = unbounded inbound queue


class RouterFull(RuntimeError):
    """Inbound queue rejected a message. Fatal for the server."""


# ============ PEERS ============

class Peer:
    """Writable end of one accepted connection."""

    def __init__(self, address):
        self.address = address

    async def send(self, frame: bytes):
        """Write one frame. Raises ConnectionError if the peer is gone."""
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    def __str__(self):
        if isinstance(self.address, tuple):
            return f'{self.address[0]}:{self.address[1]}'
        return str(self.address)


class TcpPeer(Peer):
    def __init__(self, address, writer: asyncio.StreamWriter, max_buffer: int = MAX_BUFFER):
        super().__init__(address)
        self.writer = writer
        self.max_buffer = max_buffer

    async def send(self, frame: bytes):
        if self.writer.is_closing():
            raise ConnectionError('connection closed')
        # A closing transport swallows writes, so check before writing
        backlog = self.writer.transport.get_write_buffer_size()
        if backlog > self.max_buffer:
            raise ConnectionError(f'{backlog} bytes unsent')
        self.writer.write(frame)

    async def close(self):
        self.writer.close()


class WebSocketPeer(Peer):
    def __init__(self, address, ws):
        super().__init__(address)
        self.ws = ws

    async def send(self, frame: bytes):
        try:
            await self.ws.send(frame)
        except ConnectionClosed as e:
            raise ConnectionError(str(e)) from e

    async def close(self):
        await self.ws.close()


# ============ REGISTRY ============

async def close_peer(peer: Peer, timeout: Optional[float] = None):
    """Close peer, giving up after timeout seconds."""
    try:
        await asyncio.wait_for(peer.close(), timeout)
    except (OSError, asyncio.TimeoutError) as e:
        log.debug('Close of %s abandoned (%s)', peer, str(e) or type(e).__name__)


class Registry:
    """Ordered list of live peers. Only the coordination loop touches it."""

    def __init__(self):
        self._peers: List[Peer] = []

    def add(self, peer: Peer):
        self._peers.append(peer)

    def __len__(self):
        return len(self._peers)

    def __iter__(self):
        return iter(list(self._peers))

    async def broadcast(self, frame: bytes, timeout: Optional[float] = None) -> List[Peer]:
        """Write frame to every peer in order; drop the ones that fail."""
        alive = []
        for peer in self._peers:
            try:
                await asyncio.wait_for(peer.send(frame), timeout)
            except (OSError, asyncio.TimeoutError) as e:
                log.info('Dropping %s (%s)', peer, str(e) or type(e).__name__)
                await close_peer(peer, timeout)
            else:
                alive.append(peer)
        self._peers = alive
        return alive


# ============ ROUTER ============

class Router:
    """Many handlers publish, the coordination loop drains."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)

    def publish(self, text: str):
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            raise RouterFull(f'{self._queue.qsize()} messages already pending') from None

    def drain_one(self) -> Optional[str]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()


# ============ SERVER ============

class RelayServer:
    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        self.registry = Registry()
        self.router = Router(self.config.max_pending)
        self._joining: asyncio.Queue = asyncio.Queue()
        self._server: Optional[asyncio.AbstractServer] = None
        self._ws_server = None
        self._failure: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Bind the listeners. Bind errors propagate."""
        cfg = self.config
        self._server = await asyncio.start_server(self._handle_tcp, cfg.host, cfg.port)
        host, port = self.address
        log.info('Relay listening on tcp://%s:%s', host, port)
        if cfg.ws_port is not None:
            self._ws_server = await websockets.serve(self._handle_ws, cfg.host, cfg.ws_port)
            log.info('WebSocket peers on ws://%s:%s', *self.ws_address)

    @property
    def address(self) -> Tuple[str, int]:
        return self._server.sockets[0].getsockname()[:2]

    @property
    def ws_address(self) -> Optional[Tuple[str, int]]:
        if self._ws_server is None:
            return None
        return list(self._ws_server.sockets)[0].getsockname()[:2]

    async def tick(self):
        """One coordination step: admit new peers, then fan out pending messages."""
        while not self._joining.empty():
            self.registry.add(self._joining.get_nowait())
        while True:
            text = self.router.drain_one()
            if text is None:
                break
            await self.registry.broadcast(encode(text), self.config.write_timeout)

    async def serve_forever(self):
        if self._server is None:
            await self.start()
        while True:
            if self._failure is not None:
                raise self._failure
            await self.tick()
            await asyncio.sleep(self.config.poll_interval)

    async def close(self):
        """Stop the cycle and close every peer and listener.

        A fatal error raised by the background cycle is re-raised here."""
        task, self._task = self._task, None
        try:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        finally:
            await self._close_all()

    async def _close_all(self):
        while not self._joining.empty():
            self.registry.add(self._joining.get_nowait())
        for peer in self.registry:
            await close_peer(peer, self.config.write_timeout)
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def __aenter__(self):
        await self.start()
        self._task = asyncio.ensure_future(self.serve_forever())
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ---- per-connection handlers ----

    def _admit(self, peer: Peer):
        log.info('Client %s connected', peer)
        self._joining.put_nowait(peer)

    def _abort(self, exc: BaseException):
        log.error('Fatal: %s', exc)
        if self._failure is None:
            self._failure = exc

    def _accept_frame(self, peer: Peer, frame: bytes) -> bool:
        """Publish one received frame. False means the server is going down."""
        try:
            text = decode(frame)
        except DecodeError:
            log.warning('Invalid UTF-8 from %s', peer)
            return True
        log.info('%s: %r', peer, text)
        try:
            self.router.publish(text)
        except RouterFull as e:
            self._abort(e)
            return False
        return True

    async def _handle_tcp(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle one TCP connection."""
        peer = TcpPeer(writer.get_extra_info('peername'), writer, self.config.max_buffer)
        self._admit(peer)
        try:
            while True:
                try:
                    frame = await reader.readexactly(MSG_SIZE)
                except (asyncio.IncompleteReadError, OSError):
                    break
                if not self._accept_frame(peer, frame):
                    break
        finally:
            log.info('Closing connection with %s', peer)
            writer.close()

    async def _handle_ws(self, ws, path=None):
        """Handle one WebSocket connection."""
        peer = WebSocketPeer(ws.remote_address, ws)
        self._admit(peer)
        try:
            async for msg in ws:
                if isinstance(msg, str):
                    msg = encode(msg)
                elif len(msg) != MSG_SIZE:
                    log.warning('%s sent a %d-byte frame, expected %d', peer, len(msg), MSG_SIZE)
                    continue
                if not self._accept_frame(peer, msg):
                    break
        except ConnectionClosed:
            pass
        finally:
            log.info('Closing connection with %s', peer)


async def serve(config: RelayConfig):
    server = RelayServer(config)
    try:
        await server.serve_forever()
    finally:
        await server.close()


def main(argv=None):
    p = argparse.ArgumentParser(description='TCP broadcast relay (32-byte frames)')
    p.add_argument('--host', default=HOST)
    p.add_argument('--port', type=int, default=PORT)
    p.add_argument('--ws-port', type=int, default=None, help='also accept WebSocket peers on this port')
    p.add_argument('--poll-interval', type=float, default=POLL_INTERVAL)
    p.add_argument('--write-timeout', type=float, default=WRITE_TIMEOUT)
    p.add_argument('-v', '--verbose', action='store_true')
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(name)s] %(message)s')
    config = RelayConfig(host=args.host, port=args.port, ws_port=args.ws_port,
                         poll_interval=args.poll_interval, write_timeout=args.write_timeout)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass
    except (OSError, RouterFull) as e:
        log.error('Relay stopped: %s', e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
