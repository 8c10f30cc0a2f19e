#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Worker Registry

The persisted table of live workers. Each line of the registry file holds
one record as a compact JSON array::

    [4242, "/srv/cgi/shop.cgi.server", "shopkey_1729250000811"]

Every operation takes the exclusive sidecar lock ``<registry>.lock`` so
that read-reconcile-write, append and remove never interleave, across
threads and processes alike.
"""

import collections
import json
import logging
import os
import tempfile

from cgidispatch.errors import RegistryError
from cgidispatch import util
from cgidispatch.lockfile import LockFile
from cgidispatch.process import ProcessControl


class WorkerRecord(collections.namedtuple("WorkerRecord",
                                          ["pid", "program", "port"])):
    """One registered worker: process id, program path and port name."""

    __slots__ = ()

    def to_line(self):
        return json.dumps([self.pid, self.program, self.port]) + "\n"

    @classmethod
    def from_line(cls, line):
        """Parse one registry line, raising ValueError if malformed."""
        try:
            value = json.loads(line)
        except ValueError as e:
            raise ValueError(f"Invalid registry line: {line!r}") from e

        if (not isinstance(value, list) or len(value) != 3
                or not isinstance(value[0], int)
                or isinstance(value[0], bool)
                or not isinstance(value[1], str)
                or not isinstance(value[2], str)):
            raise ValueError(f"Invalid registry line: {line!r}")
        return cls(*value)


class Registry(object):
    """
    Repository for worker records.

    The lock discipline is internal: callers only see ``read_live``,
    ``append`` and ``remove``.

    Lines that fail to parse are skipped with a warning and disappear
    with the next rewrite of the table.
    """

    def __init__(self, path, lock_timeout=10.0, process=None, log=None):
        self.path = path
        self.lock_path = "%s.lock" % path
        self.lock_timeout = lock_timeout
        self.process = process or ProcessControl()
        self.log = log or logging.getLogger("cgidispatch.error")

    @classmethod
    def from_config(cls, cfg, process=None, log=None):
        return cls(cfg.registry, lock_timeout=cfg.lock_timeout,
                   process=process, log=log)

    def read_live(self):
        """Return the live records, dropping dead ones from the file."""
        with self._locked():
            records, dirty = self._load()
            live = [r for r in records if self.process.is_alive(r.pid)]
            if dirty or len(live) != len(records):
                for r in records:
                    if r not in live:
                        self.log.debug("Dropping stale worker %s (pid: %s)",
                                       r.port, r.pid)
                self._write(live)
            return live

    def append(self, record):
        with self._locked():
            fdir = os.path.dirname(self.path)
            if fdir:
                os.makedirs(fdir, exist_ok=True)
            try:
                with open(self.path, "a") as f:
                    f.write(record.to_line())
            except OSError as e:
                raise RegistryError(f"Cannot append to registry: {e}",
                                    path=self.path) from e

    def remove(self, pid, port):
        with self._locked():
            records, _dirty = self._load()
            keep = [r for r in records
                    if not (r.pid == pid and r.port == port)]
            self._write(keep)

    def _locked(self):
        # a fresh LockFile per operation keeps concurrent threads apart,
        # flock locks belong to the open file description.
        return LockFile(self.lock_path, timeout=self.lock_timeout)

    def _load(self):
        """Load all parseable records; ``dirty`` is set if any line was bad."""
        records = []
        dirty = False
        try:
            with open(self.path, "r") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return records, dirty
        except OSError as e:
            raise RegistryError(f"Cannot read registry: {e}",
                                path=self.path) from e

        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                records.append(WorkerRecord.from_line(line))
            except ValueError:
                self.log.warning("Skipping malformed registry line %d in %s: "
                                 "%r", lineno, self.path, line)
                dirty = True
        return records, dirty

    def _write(self, records):
        fdir = os.path.dirname(self.path) or "."
        try:
            os.makedirs(fdir, exist_ok=True)
            fd, tmpname = tempfile.mkstemp(dir=fdir, prefix=".registry-")
        except OSError as e:
            raise RegistryError(f"Cannot rewrite registry: {e}",
                                path=self.path) from e

        try:
            with os.fdopen(fd, "w") as f:
                for r in records:
                    f.write(r.to_line())
            os.replace(tmpname, self.path)
        except OSError as e:
            util.unlink(tmpname)
            raise RegistryError(f"Cannot rewrite registry: {e}",
                                path=self.path) from e
