import asyncio
import socket

from unproxy.common import Connection


class FakeReader:
    def __init__(self, chunks, error=None, delay=0, block=False):
        self.chunks = list(chunks)
        self.error = error
        self.delay = delay
        self.block = block
        self.requested = []

    async def read(self, n):
        self.requested.append(n)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.chunks:
            return self.chunks.pop(0)
        if self.error is not None:
            raise self.error
        if self.block:
            await asyncio.Event().wait()
        return b''


class FakeWriter:
    def __init__(self, error=None, can_eof=True):
        self.data = bytearray()
        self.error = error
        self.can_eof = can_eof
        self.eof = False
        self.closed = False

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        if self.error is not None:
            raise self.error

    def can_write_eof(self):
        return self.can_eof

    def write_eof(self):
        self.eof = True

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        if name == 'peername':
            return ('127.0.0.1', 40000)
        return default


async def socket_pair():
    """Returns two stream connections wired to each other."""
    a, b = socket.socketpair()
    left = Connection(*await asyncio.open_connection(sock=a))
    right = Connection(*await asyncio.open_connection(sock=b))
    return left, right


async def start_target(handler):
    server = await asyncio.start_server(handler, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


async def echo(reader, writer):
    while True:
        data = await reader.read(1024)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


async def pong(reader, writer):
    await reader.read()
    writer.write(b'PONG')
    await writer.drain()
    writer.close()


async def wait_idle(proxy, timeout=5):
    async def _wait():
        while proxy.tasks:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_wait(), timeout)


def run(coro, timeout=10):
    return asyncio.run(asyncio.wait_for(coro, timeout))
