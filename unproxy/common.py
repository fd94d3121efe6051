import ipaddress
from collections import namedtuple


class AddressError(ValueError):
	pass

class Endpoint(namedtuple('Endpoint', ['ip', 'port'])):
	__slots__ = ()

	@staticmethod
	def from_connection_string(x):
		"""
		ip:port
		or
		[ipv6]:port
		"""
		if x.find(':') == -1:
			raise AddressError('Missing port in address %r' % x)

		t, port = x.rsplit(':', 1)
		if t.startswith('[') and t.endswith(']'):
			t = t[1:-1]
		elif t.find(':') != -1:
			raise AddressError('IPv6 addresses must be enclosed in brackets: %r' % x)

		try:
			ip = ipaddress.ip_address(t)
		except ValueError:
			raise AddressError('Invalid IP address %r in %r' % (t, x))

		if not (port.isascii() and port.isdigit()) or int(port) > 65535:
			raise AddressError('Invalid port %r in %r' % (port, x))

		return Endpoint(str(ip), int(port))

	@property
	def family(self):
		return ipaddress.ip_address(self.ip).version

	def __str__(self):
		if self.family == 6:
			return '[%s]:%d' % (self.ip, self.port)
		return '%s:%d' % (self.ip, self.port)

class Connection(namedtuple('Connection', ['reader', 'writer'])):
	"""
	Read and write capabilities of one TCP connection. The socket is released
	once the writer is closed.
	"""
	__slots__ = ()

	def get_paddr(self):
		peer = self.writer.get_extra_info('peername')
		if not isinstance(peer, tuple):
			return str(peer or '?')
		return '%s:%d' % peer[:2]

class CopyError(Exception):
	def __init__(self, side, cause, transferred = 0, label = ''):
		super().__init__(side, cause, transferred, label)
		self.side = side
		self.cause = cause
		self.transferred = transferred
		self.label = label

	def __str__(self):
		return '%s %s failed after %d bytes: %r' % (self.label, self.side, self.transferred, self.cause)

class RelayOutcome(namedtuple('RelayOutcome', ['upstream', 'downstream'])):
	"""
	Results of the two directions of one relay. Each result is either the
	number of bytes copied or the CopyError that ended the direction.
	"""
	__slots__ = ()

	@property
	def errors(self):
		return [r for r in self if isinstance(r, CopyError)]

	@property
	def ok(self):
		return len(self.errors) == 0

	@staticmethod
	def _fmt(result):
		if isinstance(result, CopyError):
			return 'failed after %d bytes (%s: %r)' % (result.transferred, result.side, result.cause)
		return '%d bytes' % result

	def __str__(self):
		return '-> %s, <- %s' % (self._fmt(self.upstream), self._fmt(self.downstream))
