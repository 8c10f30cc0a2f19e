#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Dispatcher

Per-request control flow of the CGI front end:

    Classify -> (NewSession | Continuation) -> Locate -> [Spawn] -> Forward

A request without a session field is a new session; the load balancer
picks the instance, spawning one when needed. A continuation names its
instance through the session key; when that instance is gone the user
gets the "no handler" page with a link restarting the flow.
"""

import collections
import html
import os
import textwrap

from cgidispatch import util
from cgidispatch.balancer import LoadBalancer
from cgidispatch.connector import Connector
from cgidispatch.errors import FormDecodeError, ProtocolError, SpawnError
from cgidispatch.forms import decode_form, pop_field, read_form_data, server_env
from cgidispatch.naming import NameService
from cgidispatch.process import ProcessControl
from cgidispatch.protocol import Submit, WorkerProtocol
from cgidispatch.registry import Registry
from cgidispatch.session import SESSION_FIELD, SessionKey

CONNECTED = "connected"
ABSENT = "absent"
SPAWNED_AND_RETRIED = "spawned_and_retried"

# how long a new session waits for a worker that may still be starting
# before spawning one itself (seconds)
STARTUP_GRACE = 0.25


class LocateResult(collections.namedtuple("LocateResult",
                                          ["outcome", "sock", "port"])):
    """Outcome of locating a worker: CONNECTED, ABSENT or SPAWNED_AND_RETRIED."""

    __slots__ = ()

    @property
    def found(self):
        return self.sock is not None

    def close(self):
        if self.sock is not None:
            util.close(self.sock)


class _CountingWriter(object):

    def __init__(self, out):
        self.out = out
        self.written = 0

    def write(self, data):
        self.out.write(data)
        self.written += len(data)

    def flush(self):
        self.out.flush()


class Dispatcher(object):

    def __init__(self, cfg, log, program, seed, url, server_args=None,
                 registry=None, process=None, names=None, connector=None):
        self.cfg = cfg
        self.log = log
        self.program = os.path.abspath(program)
        self.seed = seed
        self.url = url
        self.server_args = list(server_args or [])
        self.process = process or ProcessControl()
        self.registry = registry or Registry.from_config(cfg, self.process,
                                                         log=log)
        self.names = names or NameService.from_config(cfg)
        self.connector = connector or Connector.from_config(cfg, self.names,
                                                            log=log)
        self.balancer = LoadBalancer(self, cfg.loadbalance,
                                     max_depth=cfg.max_balance_depth)

    def spawn_args(self, port, key):
        args = [self.program]
        args.extend(self.server_args)
        args.extend(["-port", port, "-scriptkey", str(key)])
        return args

    def spawn(self, port, key):
        argv = self.spawn_args(port, key)
        pid = self.process.spawn(argv)
        self.log.info("Spawned worker %s for port %s (pid: %s)",
                      self.program, port, pid)
        return pid

    def locate(self, key, new_session):
        """Find the worker for ``key``; start it if this is a new session.

        A new session gives a worker that is still starting a short grace
        period, spawns one when nobody answers, then waits up to the
        connect timeout for the fresh worker. A continuation waits up to
        the connect timeout for its worker and never spawns.
        """
        port = key.port(self.seed)

        if not new_session:
            sock = self.connector.connect(port)
            if sock is None:
                self.log.debug("No worker answers on %s", port)
                return LocateResult(ABSENT, None, port)
            return LocateResult(CONNECTED, sock, port)

        grace = min(STARTUP_GRACE, self.connector.timeout)
        sock = self.connector.connect(port, timeout=grace)
        if sock is not None:
            return LocateResult(CONNECTED, sock, port)

        try:
            self.spawn(port, key)
        except SpawnError as e:
            self.log.error("%s", e)
            return LocateResult(ABSENT, None, port)

        sock = self.connector.connect(port)
        if sock is None:
            self.log.warning("Worker %s did not come up on %s within %ss",
                             self.program, port, self.connector.timeout)
            return LocateResult(ABSENT, None, port)
        return LocateResult(SPAWNED_AND_RETRIED, sock, port)

    def forward(self, result, message, out):
        """Send ``message`` and stream the framed answer to ``out``.

        Returns the number of bytes written to ``out``.
        """
        writer = _CountingWriter(out)
        try:
            WorkerProtocol.write_message(result.sock, message)
            with result.sock.makefile("rb") as rfile:
                WorkerProtocol.copy_document(rfile, writer)
        finally:
            result.close()
        return writer.written

    def dispatch(self, environ, stdin, out):
        """Handle one CGI request. Returns the process exit status."""
        try:
            data = read_form_data(environ, stdin)
            fields = decode_form(data,
                                 symmetric=self.cfg.symmetric_coordinates)
        except FormDecodeError as e:
            self.log.error("Rejecting request: %s", e)
            util.write_error(out, 400, "Bad Request", str(e))
            return 1

        key_text, fields = pop_field(fields, SESSION_FIELD)
        if key_text is None:
            result, key = self.balancer.new_session()
        else:
            try:
                key = SessionKey.parse(key_text)
            except ValueError:
                self.log.info("Invalid session key %r", key_text)
                self.no_handler(environ, out)
                return 0
            result = self.locate(key, new_session=False)

        if not result.found:
            self.no_handler(environ, out)
            return 0

        # the worker embeds the key in its page so continuations find it
        env = server_env(environ)
        env.append((SESSION_FIELD, str(key)))
        message = Submit(env, fields)
        writer = _CountingWriter(out)
        try:
            self.forward(result, message, writer)
        except (ProtocolError, OSError) as e:
            self.log.error("Forwarding to %s failed: %s", result.port, e)
            if writer.written == 0:
                self.no_handler(environ, out)
        return 0

    def restart_url(self, environ):
        query = environ.get("QUERY_STRING", "")
        if query:
            return "%s?%s" % (self.url, query)
        return self.url

    def no_handler(self, environ, out):
        """Render the fallback page for an unrecoverable dispatch."""
        link = html.escape(self.restart_url(environ), quote=True)
        body = textwrap.dedent("""\
        <html>
          <head>
            <title>No handler found</title>
          </head>
          <body>
            <h1>Sorry, your request cannot be processed</h1>
            <p>The server that handled your session is no longer available.
            This may happen because</p>
            <ul>
              <li>your session timed out,</li>
              <li>you resubmitted an old form with the browser's back button,</li>
              <li>the server was restarted.</li>
            </ul>
            <p><a href="%s">Click here to start again.</a></p>
          </body>
        </html>
        """) % link
        body = body.encode("utf-8")
        head = ("Content-Type: text/html; charset=utf-8\r\n"
                "Content-Length: %d\r\n\r\n" % len(body))
        out.write(util.to_bytestring(head) + body)
        out.flush()
