# -*- coding: utf-8 -
#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import errno
import os
import signal
import subprocess

from cgidispatch.errors import SpawnError


class ProcessControl(object):
    """Liveness checks, signals and detached spawning of OS processes.

    Everything that touches real processes goes through an instance of
    this class so tests can substitute a fake.
    """

    def is_alive(self, pid):
        if pid <= 0:
            return False

        # reap our own exited children first, a zombie still answers
        # to signal 0.
        try:
            wpid, _status = os.waitpid(pid, os.WNOHANG)
            if wpid == pid:
                return False
        except ChildProcessError:
            pass

        try:
            os.kill(pid, 0)
        except OSError as e:
            if e.errno == errno.ESRCH:
                return False
            if e.errno == errno.EPERM:
                # exists, owned by someone else
                return True
            raise
        return True

    def terminate(self, pid, sig=signal.SIGTERM):
        """Send ``sig`` to ``pid``. Returns False if it was already gone."""
        try:
            os.kill(pid, sig)
        except OSError as e:
            if e.errno == errno.ESRCH:
                return False
            raise
        return True

    def spawn(self, argv, cwd=None):
        """Start ``argv`` detached from the current session.

        The child gets its own session and no standard streams, so the
        web server does not wait on it once the dispatcher exits.
        """
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(argv[0], e) from e
        return proc.pid
