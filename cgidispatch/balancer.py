#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Load Balancer

Chooses the worker instance a new session is bound to. Decisions are only
made at session start; afterwards the session key pins every request to
its instance.

Policies:

* ``no``: one canonical instance per program, reused or spawned.
* ``standard``: the canonical instance if it is idle, else the first
  idle registered sibling, else a new instance under a longer key. At
  most ``max_depth`` new instances are tried for one session; past that
  the session stays on the last (busy) instance and waits there.
* ``multiple``: a fresh instance for every new session.
"""

from cgidispatch import util
from cgidispatch.protocol import GetLoad, WorkerProtocol
from cgidispatch.session import SessionKey


class LoadBalancer(object):

    def __init__(self, dispatcher, policy="no", max_depth=3):
        self.dispatcher = dispatcher
        self.policy = policy
        self.max_depth = max_depth

    @property
    def log(self):
        return self.dispatcher.log

    def new_session(self):
        """Locate (or spawn) the instance for a new session.

        Returns:
            (LocateResult, SessionKey)
        """
        if self.policy == "multiple":
            key = SessionKey.fresh()
            return self.dispatcher.locate(key, new_session=True), key
        if self.policy == "standard":
            return self._balance(SessionKey(), 0)

        key = SessionKey()
        return self.dispatcher.locate(key, new_session=True), key

    def _balance(self, key, depth):
        result = self.dispatcher.locate(key, new_session=True)
        if not result.found or not self.is_busy(result.port):
            return result, key

        tried = set(p for p in self._chain_ports(key))
        sibling = self.idle_sibling(exclude=tried)
        if sibling is not None:
            located = self.dispatcher.locate(sibling, new_session=False)
            if located.found:
                result.close()
                self.log.debug("Session bound to idle instance %s",
                               located.port)
                return located, sibling

        if depth >= self.max_depth:
            self.log.warning("All instances of %s busy after %d extra "
                             "instances, queueing on %s",
                             self.dispatcher.program, depth, result.port)
            return result, key

        result.close()
        return self._balance(key.extend(), depth + 1)

    def _chain_ports(self, key):
        base = self.dispatcher.seed
        for i in range(key.depth + 1):
            yield SessionKey(key.segments[:i]).port(base)

    def is_busy(self, port):
        """Ask the worker on ``port`` for its load; unreachable is busy."""
        sock = self.dispatcher.connector.connect_once(port)
        if sock is None:
            return True
        try:
            WorkerProtocol.write_message(sock, GetLoad())
            with sock.makefile("rb") as rfile:
                return WorkerProtocol.read_load(rfile)
        except OSError as e:
            self.log.debug("Load query on %s failed: %s", port, e)
            return True
        finally:
            util.close(sock)

    def siblings(self):
        """Live instances of the same program under the same base port."""
        base = self.dispatcher.seed
        program = self.dispatcher.program
        found = []
        for record in self.dispatcher.registry.read_live():
            if record.program != program:
                continue
            key = SessionKey.from_port(base, record.port)
            if key is not None:
                found.append((record.port, key))
        return found

    def idle_sibling(self, exclude=()):
        """Key of the first idle sibling not in ``exclude``, or None."""
        for port, key in self.siblings():
            if port in exclude:
                continue
            if not self.is_busy(port):
                return key
        return None
