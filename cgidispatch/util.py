# -*- coding: utf-8 -
#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import errno
import fcntl
import html
import os
import socket
import textwrap


CHUNK_SIZE = (16 * 1024)

try:
    from setproctitle import setproctitle

    def _setproctitle(title):
        setproctitle("cgidispatch: %s" % title)
except ImportError:
    def _setproctitle(title):
        return


def close_on_exec(fd):
    flags = fcntl.fcntl(fd, fcntl.F_GETFD)
    flags |= fcntl.FD_CLOEXEC
    fcntl.fcntl(fd, fcntl.F_SETFD, flags)


def close(sock):
    try:
        sock.close()
    except socket.error:
        pass


def unlink(path):
    try:
        os.unlink(path)
    except OSError as e:
        if e.errno != errno.ENOENT:
            raise


def check_is_writeable(path):
    try:
        f = open(path, 'a')
    except IOError as e:
        raise RuntimeError("Error: '%s' isn't writable [%r]" % (path, e))
    f.close()


def to_bytestring(value, encoding="latin-1"):
    """Converts a string argument to a byte string"""
    if isinstance(value, bytes):
        return value
    if not isinstance(value, str):
        raise TypeError('%r is not a string' % value)
    return value.encode(encoding)


def write_error(out, status_int, reason, mesg):
    """Write a minimal CGI error document to the binary stream ``out``."""
    body = textwrap.dedent("""\
    <html>
      <head>
        <title>%(reason)s</title>
      </head>
      <body>
        <h1>%(reason)s</h1>
        %(mesg)s
      </body>
    </html>
    """) % {"reason": reason, "mesg": html.escape(mesg)}
    body = body.encode("utf-8")

    head = textwrap.dedent("""\
    Status: %s %s\r
    Content-Type: text/html; charset=utf-8\r
    Content-Length: %d\r
    \r
    """) % (str(status_int), reason, len(body))
    out.write(head.encode("latin-1") + body)
    out.flush()
