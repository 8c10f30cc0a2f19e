#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Fleet Administration

Batch commands over every registered worker. Each command reads the live
registry, sends one protocol message to every entry and, for the
destructive ones, reconciles the registry afterwards. A worker that does
not answer yields an empty result for its entry; the batch goes on.
"""

import logging
import signal
import time

from cgidispatch import util
from cgidispatch.connector import Connector
from cgidispatch.errors import ProtocolError
from cgidispatch.naming import NameService
from cgidispatch.process import ProcessControl
from cgidispatch.protocol import (
    CleanServer,
    GetLoad,
    ShowStatus,
    SketchHandlers,
    SketchStatus,
    StopCgiServer,
    WorkerProtocol,
)
from cgidispatch.registry import Registry

EXIT_POLL_INTERVAL = 0.05


def document_body(raw):
    """Strip the header block of a framed document."""
    for sep in (b"\r\n\r\n", b"\n\n"):
        head, found, body = raw.partition(sep)
        if found:
            return body
    return raw


def format_record(record):
    return f"{record.pid:<8} {record.port:<40} {record.program}"


class Fleet(object):

    def __init__(self, cfg, log=None, registry=None, process=None, names=None,
                 connector=None):
        self.cfg = cfg
        self.log = log or logging.getLogger("cgidispatch.error")
        self.process = process or ProcessControl()
        self.registry = registry or Registry.from_config(cfg, self.process,
                                                         log=self.log)
        self.names = names or NameService.from_config(cfg)
        self.connector = connector or Connector(
            self.names,
            timeout=cfg.connect_timeout,
            backoff=cfg.connect_backoff,
            io_timeout=cfg.connect_timeout,
            log=self.log
        )
        self.exit_timeout = cfg.connect_timeout

    def send(self, record, message):
        """Send ``message`` to one worker.

        Returns the raw answer (b"" when none is expected), or None when
        the worker could not be reached or answered garbage.
        """
        sock = self.connector.connect_once(record.port)
        if sock is None:
            self.log.debug("Worker %s (pid: %s) unreachable", record.port,
                           record.pid)
            return None
        try:
            WorkerProtocol.write_message(sock, message)
            if isinstance(message, GetLoad):
                with sock.makefile("rb") as rfile:
                    busy = WorkerProtocol.read_load(rfile)
                return (WorkerProtocol.LOAD_BUSY if busy
                        else WorkerProtocol.LOAD_IDLE).encode("ascii")
            if not message.expects_document:
                return b""
            with sock.makefile("rb") as rfile:
                return WorkerProtocol.read_document(rfile)
        except (OSError, ProtocolError) as e:
            self.log.debug("Worker %s (pid: %s) failed: %s", record.port,
                           record.pid, e)
            return None
        finally:
            util.close(sock)

    def broadcast(self, message, records=None):
        """Send ``message`` to every record; yields (record, answer)."""
        if records is None:
            records = self.registry.read_live()
        for record in records:
            yield record, self.send(record, message)

    def _report(self, message, body_only=True):
        lines = []
        for record, answer in self.broadcast(message):
            lines.append(format_record(record))
            if answer is None:
                lines.append("")
                continue
            text = document_body(answer) if body_only else answer
            lines.append(text.decode("utf-8", "replace").rstrip("\n"))
        return lines

    def show(self):
        records = self.registry.read_live()
        if not records:
            return ["No workers registered"]
        lines = [f"{'PID':<8} {'PORT':<40} PROGRAM", "-" * 70]
        lines.extend(format_record(r) for r in records)
        lines.append("")
        lines.append(f"Total: {len(records)} workers")
        return lines

    def load(self):
        lines = []
        for record, answer in self.broadcast(GetLoad()):
            state = answer.decode("ascii") if answer is not None else ""
            lines.append(f"{format_record(record)}  {state}")
        return lines

    def status(self):
        return self._report(ShowStatus())

    def sketch(self):
        return self._report(SketchStatus())

    def showall(self):
        return self._report(SketchHandlers())

    def clean(self):
        lines = self._report(CleanServer())
        self.registry.read_live()
        return lines

    def stop(self, program=None):
        records = self.registry.read_live()
        if program is not None:
            records = [r for r in records if r.program == program]

        lines = []
        for record, answer in self.broadcast(StopCgiServer(), records):
            state = "stopped" if answer is not None else ""
            lines.append(f"{format_record(record)}  {state}")
        self.await_exit([r.pid for r in records])
        self.registry.read_live()
        return lines

    def stopscript(self, program):
        return self.stop(program=program)

    def kill(self):
        records = self.registry.read_live()
        lines = []
        for record in records:
            try:
                killed = self.process.terminate(record.pid, signal.SIGTERM)
            except OSError as e:
                self.log.warning("Cannot kill pid %s: %s", record.pid, e)
                killed = False
            lines.append(f"{format_record(record)}  "
                         f"{'killed' if killed else ''}")
        self.await_exit([r.pid for r in records])
        self.registry.read_live()
        return lines

    def await_exit(self, pids):
        """Wait until ``pids`` are gone or the exit timeout passes."""
        deadline = time.monotonic() + self.exit_timeout
        pending = set(pids)
        while pending:
            pending = set(p for p in pending if self.process.is_alive(p))
            if not pending or time.monotonic() >= deadline:
                break
            time.sleep(EXIT_POLL_INTERVAL)
        return not pending


COMMANDS = {
    "show": "List the registered workers",
    "load": "Show whether each worker is busy",
    "status": "Show the status of each worker",
    "sketch": "Show a short status of each worker",
    "showall": "Show the event handlers of each worker",
    "clean": "Purge expired state and retire idle workers",
    "stop": "Stop all workers",
    "kill": "Terminate all worker processes",
    "stopscript": "Stop all workers of one program",
}
