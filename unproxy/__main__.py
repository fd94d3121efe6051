import argparse
import asyncio
import logging
import sys

from unproxy import logger
from unproxy.common import Endpoint, AddressError
from unproxy.unproxy import UnProxy


def endpoint(x):
    try:
        return Endpoint.from_connection_string(x)
    except AddressError as e:
        raise argparse.ArgumentTypeError(str(e))

def get_parser():
    parser = argparse.ArgumentParser(prog='unproxy', description='Transparent TCP relay. Forwards every connection made to the listen address to the target address.')
    parser.add_argument('--listen', type = endpoint, required = True, help='address to accept connections on, ip:port or [ipv6]:port')
    parser.add_argument('--target', type = endpoint, required = True, help='address to connect to for each accepted connection')
    parser.add_argument('-v', '--verbose', action='store_true', help='log every connection and chunk')
    parser.add_argument('--max-connections', type = int, default = None, help='stop accepting while this many connections are relayed')
    parser.add_argument('--idle-timeout', type = float, default = None, help='seconds a direction may stay silent before it is aborted')
    parser.add_argument('--connect-timeout', type = float, default = None, help='seconds to wait for the target connection')
    parser.add_argument('--accept-errors', choices = ['continue', 'fatal'], default = 'continue', help='what to do when accepting a connection fails')
    return parser

def main(argv = None):
    args = get_parser().parse_args(argv)

    if args.verbose:
        logger.setLevel(logging.DEBUG)

    proxy = UnProxy(
        args.listen,
        args.target,
        max_connections = args.max_connections,
        idle_timeout = args.idle_timeout,
        connect_timeout = args.connect_timeout,
        accept_errors_fatal = args.accept_errors == 'fatal',
    )

    try:
        proxy.bind()
    except OSError as e:
        logger.error('Could not bind to %s: %s' % (args.listen, e))
        sys.exit(1)

    try:
        asyncio.run(proxy.run())
    except KeyboardInterrupt:
        sys.exit(130)
    except OSError as e:
        logger.error('Accept loop on %s failed: %s' % (proxy.bound, e))
        sys.exit(1)

if __name__ == '__main__':
    main()
