# -*- coding: utf-8 -
#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import argparse
import os
import signal
import socket
import sys
import threading
import time
import traceback

from cgidispatch import SERVER_SOFTWARE, util
from cgidispatch.config import Config
from cgidispatch.errors import DispatchError, ProtocolError
from cgidispatch.glogging import Logger
from cgidispatch.naming import NameService
from cgidispatch.protocol import (
    CleanServer,
    GetLoad,
    ShowStatus,
    SketchHandlers,
    SketchStatus,
    StopCgiServer,
    Submit,
    WorkerProtocol,
)
from cgidispatch.registry import Registry, WorkerRecord

# idle time before a worker retires when nobody configured one (seconds)
DEFAULT_SERVER_TIMEOUT = 2 * 60 * 60

ACCEPT_POLL_INTERVAL = 0.5


class WorkerServer(object):
    """
    Serve one program's application on a named port.

    ``app`` is called as ``app(server_env, form_env)`` with two lists of
    (name, value) pairs and returns ``(headers, body)``. ``server_env``
    ends with the ``SCRIPTKEY`` of the session; pages carry it back as a
    hidden form field. The app may also provide ``status()``, ``sketch()``,
    ``handlers()`` returning text for the status queries, and ``clean()``
    to purge expired session state.

    Submissions are handled one at a time; load and status queries are
    answered while a submission runs.
    """

    SIGNALS = [getattr(signal, "SIG%s" % x)
               for x in "HUP QUIT INT TERM USR1".split()]

    def __init__(self, cfg, log, app, port, session_key="", program=None,
                 timeout=None, registry=None, names=None):
        self.cfg = cfg
        self.log = log
        self.app = app
        self.port = port
        self.session_key = session_key
        self.program = os.path.abspath(program or sys.argv[0])
        self.timeout = timeout or DEFAULT_SERVER_TIMEOUT
        self.registry = registry or Registry.from_config(cfg, log=log)
        self.names = names or NameService.from_config(cfg)

        self.alive = True
        self.booted = False
        self.listener = None
        self.address = None
        self.nr = 0
        self.started = time.monotonic()
        self.last_activity = self.started

        self._submit_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active = 0

    def __str__(self):
        return "<WorkerServer %s (pid: %s)>" % (self.port, self.pid)

    @property
    def pid(self):
        return os.getpid()

    @property
    def busy(self):
        with self._state_lock:
            return self._active > 0

    def idle_time(self):
        return time.monotonic() - self.last_activity

    def expired(self):
        return not self.busy and self.idle_time() > self.timeout

    def bind(self):
        """Bind the endpoint, refusing to steal it from a live worker."""
        self.address = self.names.endpoint(self.port)
        os.makedirs(os.path.dirname(self.address), mode=0o700, exist_ok=True)

        self.clear_stale()

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(self.address)
        except OSError as e:
            # another worker bound the port since clear_stale
            util.close(sock)
            raise RuntimeError("Port %s is already served: %s"
                               % (self.port, e))
        os.chmod(self.address, 0o600)
        sock.listen(64)
        util.close_on_exec(sock.fileno())
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self.listener = sock

    def clear_stale(self):
        """Remove a socket file left behind by a dead worker."""
        if not os.path.exists(self.address):
            return
        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            probe.connect(self.address)
        except OSError:
            util.unlink(self.address)
        else:
            raise RuntimeError("Port %s is already served" % self.port)
        finally:
            util.close(probe)

    def register(self):
        self.registry.append(WorkerRecord(self.pid, self.program, self.port))

    def init_signals(self):
        # reset signaling
        for s in self.SIGNALS:
            signal.signal(s, signal.SIG_DFL)
        signal.signal(signal.SIGQUIT, self.handle_quit)
        signal.signal(signal.SIGTERM, self.handle_quit)
        signal.signal(signal.SIGINT, self.handle_quit)
        signal.signal(signal.SIGUSR1, self.handle_usr1)

    def handle_usr1(self, sig, frame):
        self.log.reopen_files()

    def handle_quit(self, sig, frame):
        self.alive = False

    def start(self):
        """Bind the endpoint and enter the registry."""
        self.bind()
        try:
            self.register()
        except Exception:
            self.shutdown()
            raise
        self.booted = True
        self.log.info("Worker serving %s (pid: %s)", self.port, self.pid)

    def init_process(self):
        """Start and serve until stopped or expired."""
        util._setproctitle("worker [%s]" % (self.cfg.proc_name or self.port))
        self.log.close_on_exec()
        self.start()
        try:
            self.run()
        finally:
            self.shutdown()

    def run(self):
        while self.alive:
            if self.expired():
                self.log.info("Worker idle for %ds, exiting: %s",
                              self.idle_time(), self)
                break
            try:
                client, _addr = self.listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.alive:
                    break
                self.log.exception("Accept failed: %s", e)
                continue

            client.settimeout(None)
            t = threading.Thread(target=self.handle, args=(client,),
                                 daemon=True)
            t.start()

    def shutdown(self):
        self.alive = False
        if self.listener is not None:
            util.close(self.listener)
            self.listener = None
            util.unlink(self.address)
        # let a running submission finish before unregistering
        with self._submit_lock:
            pass
        if self.booted:
            self.registry.remove(self.pid, self.port)
            self.booted = False
        self.log.info("Worker exiting (pid: %s)", self.pid)

    def handle(self, client):
        try:
            with client.makefile("rb") as rfile:
                message = WorkerProtocol.read_message(rfile)
            self.handle_message(client, message)
        except ConnectionError:
            self.log.debug("Connection closed before a request arrived")
        except ProtocolError as e:
            self.log.warning("Rejecting malformed request: %s", e)
        except OSError as e:
            self.log.debug("Client went away: %s", e)
        finally:
            util.close(client)

    def handle_message(self, client, message):
        if isinstance(message, Submit):
            self.handle_submit(client, message)
        elif isinstance(message, GetLoad):
            WorkerProtocol.write_load(client, self.busy)
        elif isinstance(message, ShowStatus):
            self.write_text(client, self._app_text("status", self.status_text))
        elif isinstance(message, SketchStatus):
            self.write_text(client, self._app_text("sketch", self.sketch_text))
        elif isinstance(message, SketchHandlers):
            self.write_text(client, self._app_text("handlers",
                                                   self.handlers_text))
        elif isinstance(message, CleanServer):
            self.handle_clean(client)
        elif isinstance(message, StopCgiServer):
            self.log.info("Stop requested: %s", self)
            self.alive = False

    def handle_submit(self, client, message):
        with self._state_lock:
            self._active += 1
        try:
            with self._submit_lock:
                self.last_activity = time.monotonic()
                self.nr += 1
                try:
                    headers, body = self.app(message.server_env,
                                             message.form_env)
                except Exception:
                    self.handle_error(client)
                    return
                WorkerProtocol.write_document(client, headers, body)
        finally:
            with self._state_lock:
                self._active -= 1
            self.last_activity = time.monotonic()

    def handle_error(self, client):
        self.log.exception("Error handling request")
        mesg = "<p>Internal Server Error</p>"
        if self.cfg.loglevel.lower() == "debug":
            tb = traceback.format_exc()
            mesg += "<h2>Traceback:</h2>\n<pre>%s</pre>" % tb
        headers = [("Status", "500 Internal Server Error"),
                   ("Content-Type", "text/html")]
        try:
            WorkerProtocol.write_document(
                client, headers, "<html><body>%s</body></html>" % mesg)
        except OSError:
            self.log.debug("Failed to send error message.")

    def handle_clean(self, client):
        purged = None
        clean = getattr(self.app, "clean", None)
        if callable(clean):
            purged = clean()
        lines = ["Cleaned %s" % self.port]
        if purged is not None:
            lines.append("Purged: %s" % purged)
        if self.idle_time() > self.timeout:
            lines.append("Idle for %ds, terminating" % self.idle_time())
            self.alive = False
        self.write_text(client, "\n".join(lines) + "\n")

    def write_text(self, client, text):
        WorkerProtocol.write_document(
            client, [("Content-Type", "text/plain; charset=utf-8")], text)

    def _app_text(self, name, default):
        hook = getattr(self.app, name, None)
        if callable(hook):
            return hook()
        return default()

    def status_text(self):
        return "\n".join([
            "port:      %s" % self.port,
            "key:       %s" % (self.session_key or "-"),
            "pid:       %s" % self.pid,
            "program:   %s" % self.program,
            "uptime:    %ds" % (time.monotonic() - self.started),
            "idle:      %ds" % self.idle_time(),
            "requests:  %d" % self.nr,
            "busy:      %s" % ("yes" if self.busy else "no"),
            "server:    %s" % SERVER_SOFTWARE,
        ]) + "\n"

    def sketch_text(self):
        return "%s: %d requests, %s\n" % (
            self.port, self.nr, "busy" if self.busy else "idle")

    def handlers_text(self):
        return "%s: no handler information\n" % self.port


def worker_parser(prog=None):
    parser = argparse.ArgumentParser(prog=prog, add_help=False)
    parser.add_argument("-port", required=True)
    parser.add_argument("-scriptkey", default="")
    parser.add_argument("-servertimeout", type=int, default=None,
                        help="idle timeout in milliseconds")
    return parser


def run_worker(app, argv=None, cfg=None):
    """Entry point for worker programs.

    Worker programs are started by the dispatcher as
    ``program [-servertimeout MS] -port PORT -scriptkey KEY``.
    """
    if argv is None:
        argv = sys.argv[1:]
    args = worker_parser().parse_args(argv)

    if cfg is None:
        cfg = Config()
        env_args = cfg.get_cmd_args_from_env()
        if env_args:
            cfg.load_args(cfg.parser().parse_args(env_args))

    timeout = None
    if args.servertimeout:
        timeout = args.servertimeout / 1000.0
    elif cfg.server_timeout:
        timeout = cfg.server_timeout / 1000.0

    log = Logger(cfg)
    server = WorkerServer(cfg, log, app, args.port, args.scriptkey,
                          timeout=timeout)
    server.init_signals()
    try:
        server.init_process()
    except (RuntimeError, DispatchError) as e:
        log.error("%s", e)
        return 1
    return 0
