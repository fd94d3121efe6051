import asyncio
import errno
import socket
import sys
import threading

from unproxy import logger
from unproxy.common import Endpoint, Connection, CopyError, RelayOutcome

# accept errors after which the listener needs a moment before the next accept
RESOURCE_ERRNOS = (errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM)
ACCEPT_BACKOFF = 1


def breakout_from_thread(loop):
	asyncio.set_event_loop(loop)
	loop.run_forever()

class UnProxy:
	def __init__(self, listen, target, bufsize = 1024, max_connections = None, idle_timeout = None, connect_timeout = None, accept_errors_fatal = False):
		self.listen = listen
		self.target = target

		self.bufsize = bufsize
		self.max_connections = max_connections
		self.idle_timeout = idle_timeout
		self.connect_timeout = connect_timeout
		self.accept_errors_fatal = accept_errors_fatal

		self.tasks = set()
		self.slots = None
		self.sock = None
		self.bound = None

	async def read_chunk(self, reader):
		if self.idle_timeout is None:
			return await reader.read(self.bufsize)
		return await asyncio.wait_for(reader.read(self.bufsize), timeout = self.idle_timeout)

	def shutdown_write(self, writer, label = ''):
		try:
			if writer.can_write_eof():
				writer.write_eof()
		except OSError as e:
			logger.debug('[UnProxy] %s half-close after failure: %r' % (label, e))

	async def copy(self, reader, writer, label = ''):
		"""
		Copies everything from reader to writer, then half-closes the writer.
		Returns the number of bytes copied, raises CopyError on the first I/O failure.
		"""
		transferred = 0
		while True:
			try:
				data = await self.read_chunk(reader)
			except (OSError, asyncio.TimeoutError) as e:
				# the source leg is gone, tell the destination nothing more is coming
				self.shutdown_write(writer, label)
				raise CopyError('read', e, transferred, label) from e

			if not data:
				break

			try:
				writer.write(data)
				await writer.drain()
			except (OSError, asyncio.TimeoutError) as e:
				raise CopyError('write', e, transferred, label) from e

			transferred += len(data)
			logger.debug('[UnProxy] %s %d bytes' % (label, len(data)))

		try:
			if writer.can_write_eof():
				writer.write_eof()
		except OSError as e:
			raise CopyError('write', e, transferred, label) from e

		logger.debug('[UnProxy] %s EOF after %d bytes' % (label, transferred))
		return transferred

	async def close(self, connection):
		connection.writer.close()
		try:
			await connection.writer.wait_closed()
		except OSError as e:
			logger.debug('[UnProxy] Error while closing %s: %r' % (connection.get_paddr(), e))

	async def relay(self, inbound, outbound):
		peer = inbound.get_paddr()
		upstream = asyncio.ensure_future(self.copy(inbound.reader, outbound.writer, '->'))
		downstream = asyncio.ensure_future(self.copy(outbound.reader, inbound.writer, '<-'))
		try:
			results = await asyncio.gather(upstream, downstream, return_exceptions = True)
		finally:
			await self.close(inbound)
			await self.close(outbound)

		for result in results:
			if isinstance(result, BaseException) and not isinstance(result, CopyError):
				raise result

		outcome = RelayOutcome(*results)
		logger.info('[UnProxy] %s => %s finished: %s' % (peer, self.target, outcome))
		for err in outcome.errors:
			logger.warning('[UnProxy] %s => %s %s' % (peer, self.target, err))
		return outcome

	async def handle_client(self, inbound):
		peer = inbound.get_paddr()
		logger.debug('[UnProxy] Connection from %s' % peer)

		con = asyncio.open_connection(self.target.ip, self.target.port)
		try:
			outbound = Connection(*await asyncio.wait_for(con, self.connect_timeout))
		except asyncio.TimeoutError:
			logger.warning('[UnProxy] Could not connect to target %s for %s: connection timeout' % (self.target, peer))
			await self.close(inbound)
			return None
		except OSError as e:
			logger.warning('[UnProxy] Could not connect to target %s for %s: %s' % (self.target, peer, e))
			await self.close(inbound)
			return None

		logger.debug('[UnProxy] Relaying %s => %s' % (peer, self.target))
		return await self.relay(inbound, outbound)

	def bind(self):
		family = socket.AF_INET6 if self.listen.family == 6 else socket.AF_INET
		sock = socket.socket(family, socket.SOCK_STREAM)
		try:
			if sys.platform != 'win32':
				sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
			sock.bind((self.listen.ip, self.listen.port))
			sock.listen(socket.SOMAXCONN)
			sock.setblocking(False)
		except OSError:
			sock.close()
			raise

		self.sock = sock
		self.bound = Endpoint(*sock.getsockname()[:2]) #if the listen port was 0 this is the actual port
		logger.info('[UnProxy] Listening on %s, relaying to %s' % (self.bound, self.target))
		return sock

	async def accept(self):
		loop = asyncio.get_running_loop()
		client, _ = await loop.sock_accept(self.sock)
		try:
			reader, writer = await asyncio.open_connection(sock = client)
		except OSError:
			client.close()
			raise
		return Connection(reader, writer)

	def task_done(self, task):
		self.tasks.discard(task)
		if self.slots is not None:
			self.slots.release()
		if not task.cancelled() and task.exception() is not None:
			logger.error('[UnProxy] Relay task crashed: %r' % task.exception())

	async def run(self):
		if self.sock is None:
			self.bind()
		if self.max_connections is not None:
			self.slots = asyncio.Semaphore(self.max_connections)

		while True:
			if self.slots is not None:
				await self.slots.acquire()

			try:
				inbound = await self.accept()
			except OSError as e:
				if self.slots is not None:
					self.slots.release()
				if self.accept_errors_fatal:
					raise
				logger.warning('[UnProxy] Accept failed: %s' % e)
				if e.errno in RESOURCE_ERRNOS:
					await asyncio.sleep(ACCEPT_BACKOFF)
				continue

			task = asyncio.ensure_future(self.handle_client(inbound))
			self.tasks.add(task)
			task.add_done_callback(self.task_done)

	def run_newthread(self):
		"""
		Binds in the calling thread, then runs the accept loop on a new event loop
		in a daemon thread. Returns the concurrent.futures.Future of run().
		"""
		if self.sock is None:
			self.bind()

		loop = asyncio.new_event_loop()
		t = threading.Thread(target=breakout_from_thread, args=(loop,), daemon=True)
		t.start()
		return asyncio.run_coroutine_threadsafe(self.run(), loop)
