# -*- coding: utf-8 -
#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import fcntl
import os
import time

from cgidispatch.errors import RegistryLockError

LOCK_POLL_INTERVAL = 0.01


class LockFile(object):
    """Manage an exclusive advisory lock on a sidecar LOCK file.

    The lock file itself is never removed: unlinking it while another
    process waits on the old inode would let two holders in at once.
    """

    def __init__(self, fname, timeout=10.0):
        self.fname = fname
        self.timeout = timeout
        self._lockfile = None

    def acquire(self):
        fdir = os.path.dirname(self.fname)
        if fdir:
            os.makedirs(fdir, exist_ok=True)

        lockfile = open(self.fname, 'a+b')
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(lockfile.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except (IOError, OSError):
                if time.monotonic() >= deadline:
                    lockfile.close()
                    raise RegistryLockError(self.fname, self.timeout)
                time.sleep(LOCK_POLL_INTERVAL)

        self._lockfile = lockfile

    def release(self):
        if self.released():
            return
        try:
            fcntl.flock(self._lockfile.fileno(), fcntl.LOCK_UN)
        finally:
            self._lockfile.close()
            self._lockfile = None

    def released(self):
        return self._lockfile is None

    def name(self):
        return self.fname

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *args):
        self.release()
