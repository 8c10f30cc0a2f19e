#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

import os
import signal
import threading

from cgidispatch.config import Config
from cgidispatch.connector import Connector
from cgidispatch.naming import NameService
from cgidispatch.protocol import GetLoad, WorkerProtocol
from cgidispatch.registry import Registry, WorkerRecord
from cgidispatch.worker import WorkerServer, worker_parser

PROGRAM = "/srv/cgi/shop.server"


def make_config(state_dir, **settings):
    cfg = Config()
    cfg.set("registry", os.path.join(state_dir, "registry"))
    cfg.set("socket_dir", state_dir)
    cfg.set("connect_timeout", 1.0)
    cfg.set("connect_backoff", 0.01)
    cfg.set("lock_timeout", 2.0)
    for name, value in settings.items():
        cfg.set(name, value)
    return cfg


def recorded(registry):
    """Records in the registry file as they are, without reconciling."""
    try:
        with open(registry.path) as f:
            lines = f.readlines()
    except FileNotFoundError:
        return []
    records = []
    for line in lines:
        try:
            records.append(WorkerRecord.from_line(line))
        except ValueError:
            continue
    return records


class MockLog:
    """Mock logger recording messages per level."""

    def __init__(self):
        self.messages = []

    def _record(self, level, msg, *args):
        self.messages.append((level, msg % args if args else msg))

    def debug(self, msg, *args, **kwargs):
        self._record("debug", msg, *args)

    def info(self, msg, *args, **kwargs):
        self._record("info", msg, *args)

    def warning(self, msg, *args, **kwargs):
        self._record("warning", msg, *args)

    def error(self, msg, *args, **kwargs):
        self._record("error", msg, *args)

    def critical(self, msg, *args, **kwargs):
        self._record("critical", msg, *args)

    def exception(self, msg, *args, **kwargs):
        self._record("exception", msg, *args)

    def reopen_files(self):
        pass

    def close_on_exec(self):
        pass


class FakeProcess:
    """In-memory stand-in for ProcessControl.

    The test process itself always counts as alive since in-thread
    workers register under its pid.
    """

    def __init__(self, alive=()):
        self.alive = set(alive)
        self.alive.add(os.getpid())
        self.spawned = []
        self.signalled = []
        self.on_spawn = None

    def is_alive(self, pid):
        return pid in self.alive

    def terminate(self, pid, sig=signal.SIGTERM):
        self.signalled.append((pid, sig))
        if pid in self.alive and pid != os.getpid():
            self.alive.discard(pid)
            return True
        return False

    def spawn(self, argv, cwd=None):
        self.spawned.append(list(argv))
        pid = 100000 + len(self.spawned)
        if self.on_spawn is not None:
            self.on_spawn(argv)
        self.alive.add(pid)
        return pid


class EchoApp:
    """Application answering with its name and the submitted form."""

    def __init__(self, name, gate=None):
        self.name = name
        self.gate = gate
        self.entered = threading.Event()
        self.calls = []
        self.cleaned = 0

    def __call__(self, server_env, form_env):
        self.calls.append((server_env, form_env))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(10)
        fields = " ".join("%s=%s" % kv for kv in form_env)
        body = "<html><body>%s: %s</body></html>" % (self.name, fields)
        return [("Content-Type", "text/html")], body

    def clean(self):
        self.cleaned += 1
        return 2


class WorkerThread:
    """A WorkerServer serving from a thread of the test process."""

    def __init__(self, cfg, app, port, session_key="", program=PROGRAM,
                 timeout=None, registry=None):
        self.app = app
        self.server = WorkerServer(
            cfg, MockLog(), app, port, session_key, program=program,
            timeout=timeout,
            registry=registry or Registry.from_config(cfg),
            names=NameService.from_config(cfg)
        )
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self):
        try:
            self.server.run()
        finally:
            self.server.shutdown()

    def start(self):
        self.server.start()
        self.thread.start()
        return self

    def stop(self):
        self.server.alive = False
        gate = getattr(self.app, "gate", None)
        if gate is not None:
            gate.set()
        self.thread.join(5)

    def is_alive(self):
        return self.thread.is_alive()


def spawn_in_thread(cfg, workers, registry=None, gate=None):
    """``FakeProcess.on_spawn`` hook starting a WorkerThread for argv."""
    def _spawn(argv):
        args = worker_parser().parse_args(argv[1:])
        app = EchoApp(args.port, gate=gate)
        w = WorkerThread(cfg, app, args.port, args.scriptkey,
                         program=argv[0], registry=registry).start()
        workers.append(w)
    return _spawn


def ask(cfg, port, message):
    """Send one message to a worker, return the raw answer."""
    connector = Connector(NameService.from_config(cfg), io_timeout=5.0)
    sock = connector.connect(port, timeout=2.0)
    assert sock is not None
    try:
        WorkerProtocol.write_message(sock, message)
        with sock.makefile("rb") as rfile:
            if isinstance(message, GetLoad):
                return WorkerProtocol.read_load(rfile)
            return WorkerProtocol.read_document(rfile)
    finally:
        sock.close()
