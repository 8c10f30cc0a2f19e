#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Connector

Turns a logical port name into a connected socket, retrying with backoff
while a freshly spawned worker is still starting up. Absence is reported
as ``None``, never as an exception.
"""

import logging
import socket
import time

from cgidispatch.errors import NameResolutionError

MAX_BACKOFF = 1.0


class Connector(object):

    def __init__(self, names, timeout=5.0, backoff=0.05, io_timeout=None,
                 log=None):
        """
        Args:
            names: NameService resolving port names
            timeout: total time spent retrying, in seconds
            backoff: initial delay between attempts, doubled each time
            io_timeout: socket timeout applied once connected (None blocks)
            log: logger, defaults to the cgidispatch error log
        """
        self.names = names
        self.timeout = timeout
        self.backoff = backoff
        self.io_timeout = io_timeout
        self.log = log or logging.getLogger("cgidispatch.error")

    @classmethod
    def from_config(cls, cfg, names, log=None):
        return cls(names, timeout=cfg.connect_timeout,
                   backoff=cfg.connect_backoff, log=log)

    def connect_once(self, port):
        """Single attempt; returns a socket or None."""
        try:
            path = self.names.resolve(port)
        except NameResolutionError:
            return None

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(path)
        except (socket.error, OSError) as e:
            self.log.debug("Connection to %s failed: %s", port, e)
            sock.close()
            return None
        sock.settimeout(self.io_timeout)
        return sock

    def connect(self, port, timeout=None):
        """Connect to ``port``, retrying until ``timeout`` elapses.

        Returns:
            connected socket, or None if the port stayed unreachable
        """
        if timeout is None:
            timeout = self.timeout
        deadline = time.monotonic() + timeout
        delay = self.backoff

        while True:
            sock = self.connect_once(port)
            if sock is not None:
                return sock

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.log.debug("Port %s unreachable after %.2fs", port,
                               timeout)
                return None
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, MAX_BACKOFF)
