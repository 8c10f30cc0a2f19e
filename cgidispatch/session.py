#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Session Keys

A session key binds the requests of one interactive session to one worker
instance. It is a path of segments, each made of a timestamp and a process
id; the load balancer extends the path by one segment every time it has to
move a new session to another instance.

The key is rendered as the segments joined by ``_`` and appended to the
base port name of the program, so the canonical instance (empty key)
listens on the base port itself.
"""

import os
import time

SEPARATOR = "_"

# hidden form field carrying the session key back to the dispatcher
SESSION_FIELD = "SCRIPTKEY"


def new_segment(now=None, pid=None):
    """Return a fresh key segment from the clock and a process id."""
    if now is None:
        now = time.time()
    if pid is None:
        pid = os.getpid()
    return "%d%d" % (int(now * 1000), pid)


class SessionKey(object):
    """Immutable accumulating path of key segments."""

    __slots__ = ("segments",)

    def __init__(self, segments=()):
        segments = tuple(segments)
        for segment in segments:
            if not segment or SEPARATOR in segment:
                raise ValueError("Invalid session key segment: %r" % segment)
        object.__setattr__(self, "segments", segments)

    def __setattr__(self, name, value):
        raise AttributeError("SessionKey is immutable")

    @classmethod
    def parse(cls, text):
        if not text:
            return cls()
        return cls(text.split(SEPARATOR))

    @classmethod
    def fresh(cls):
        return cls((new_segment(),))

    def extend(self, segment=None):
        """Return a longer key with ``segment`` (or a fresh one) appended."""
        return SessionKey(self.segments + (segment or new_segment(),))

    def port(self, base):
        """Port name of the instance this key addresses under ``base``."""
        if not self.segments:
            return base
        return base + SEPARATOR + str(self)

    @classmethod
    def from_port(cls, base, port):
        """Recover the key of an instance port, or None if not under base."""
        if port == base:
            return cls()
        prefix = base + SEPARATOR
        if not port.startswith(prefix):
            return None
        rest = port[len(prefix):]
        if not rest:
            return None
        try:
            return cls.parse(rest)
        except ValueError:
            return None

    @property
    def depth(self):
        return len(self.segments)

    def __bool__(self):
        return bool(self.segments)

    def __str__(self):
        return SEPARATOR.join(self.segments)

    def __repr__(self):
        return "SessionKey(%r)" % str(self)

    def __eq__(self, other):
        if not isinstance(other, SessionKey):
            return NotImplemented
        return self.segments == other.segments

    def __hash__(self):
        return hash(self.segments)

