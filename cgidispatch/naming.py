#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Name Service

Maps a logical port name to the Unix socket a worker listens on. Port
names are opaque; they are percent-quoted so that any name becomes a
single file name inside the socket directory.
"""

import os
import stat
from urllib.parse import quote

from cgidispatch.errors import NameResolutionError

LOCALITY_SUFFIX = "@localhost"


class NameService(object):

    def __init__(self, socket_dir):
        self.socket_dir = socket_dir

    @classmethod
    def from_config(cls, cfg):
        return cls(cfg.socket_dir)

    def endpoint(self, port):
        """Path a worker for ``port`` binds to."""
        return os.path.join(self.socket_dir,
                            quote(port, safe="") + LOCALITY_SUFFIX)

    def resolve(self, port):
        """Return the endpoint of a listening worker for ``port``.

        Raises:
            NameResolutionError: if nothing is bound under that name
        """
        path = self.endpoint(port)
        try:
            st = os.stat(path)
        except OSError:
            raise NameResolutionError(port, endpoint=path)
        if not stat.S_ISSOCK(st.st_mode):
            raise NameResolutionError(port, endpoint=path)
        return path
