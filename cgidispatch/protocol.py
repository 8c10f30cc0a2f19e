#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Worker Protocol

Line-based protocol between a dispatcher and a worker.

Request Format:
    One message per connection, a compact JSON array on a single line
    whose first element names the variant:

    ["Submit", [["REQUEST_METHOD", "POST"], ...], [["name", "value"], ...]]
    ["GetLoad"]
    ["StopCgiServer"]

Response Format:
    ``GetLoad`` is answered with a single line, ``busy`` or ``idle``.
    ``StopCgiServer`` gets no answer. Everything else is answered with a
    document: a header block closed by an empty line, optionally holding
    a ``Content-Length`` header, then the body.

    Content-Type: text/html
    Content-Length: 12

    <html></html>

    Without ``Content-Length`` the body runs to the end of the stream.
"""

import io
import json

from cgidispatch.errors import ProtocolError
from cgidispatch.util import CHUNK_SIZE


class Message(object):
    """Base class of all protocol messages."""

    tag = None
    expects_document = True

    def payload(self):
        return []

    @classmethod
    def from_payload(cls, payload):
        if payload:
            raise ProtocolError(f"{cls.tag} takes no arguments",
                                raw_data=payload)
        return cls()

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        return self.payload() == other.payload()

    def __hash__(self):
        return hash(self.tag)

    def __repr__(self):
        return f"<{self.tag}>"


class Submit(Message):
    """Forward one form submission together with its server environment."""

    tag = "Submit"

    def __init__(self, server_env=(), form_env=()):
        self.server_env = [(str(k), str(v)) for k, v in server_env]
        self.form_env = [(str(k), str(v)) for k, v in form_env]

    def payload(self):
        return [[list(p) for p in self.server_env],
                [list(p) for p in self.form_env]]

    @classmethod
    def from_payload(cls, payload):
        if len(payload) != 2:
            raise ProtocolError("Submit takes two arguments", raw_data=payload)
        return cls(_pairs(payload[0]), _pairs(payload[1]))

    def __hash__(self):
        return hash((self.tag, tuple(self.server_env), tuple(self.form_env)))

    def __repr__(self):
        return "<Submit server_env=%r form_env=%r>" % (self.server_env,
                                                      self.form_env)


class GetLoad(Message):
    tag = "GetLoad"
    expects_document = False


class SketchStatus(Message):
    tag = "SketchStatus"


class ShowStatus(Message):
    tag = "ShowStatus"


class SketchHandlers(Message):
    tag = "SketchHandlers"


class CleanServer(Message):
    tag = "CleanServer"


class StopCgiServer(Message):
    tag = "StopCgiServer"
    expects_document = False


MESSAGES = dict((cls.tag, cls) for cls in (
    Submit, GetLoad, SketchStatus, ShowStatus, SketchHandlers,
    CleanServer, StopCgiServer,
))


def _pairs(value):
    if not isinstance(value, list):
        raise ProtocolError("Expected a list of pairs", raw_data=value)
    pairs = []
    for item in value:
        if (not isinstance(item, list) or len(item) != 2
                or not all(isinstance(x, str) for x in item)):
            raise ProtocolError("Invalid pair", raw_data=item)
        pairs.append((item[0], item[1]))
    return pairs


class WorkerProtocol:
    """
    Encoding and framing for dispatcher/worker exchanges.
    """

    # Maximum request line size (16 MB)
    MAX_LINE_SIZE = 16 * 1024 * 1024

    LOAD_BUSY = "busy"
    LOAD_IDLE = "idle"

    @staticmethod
    def encode_message(message) -> bytes:
        """
        Encode a message as one newline-terminated line.

        Args:
            message: Message instance

        Returns:
            UTF-8 encoded line
        """
        data = [message.tag] + message.payload()
        return (json.dumps(data, separators=(",", ":")) + "\n").encode("utf-8")

    @staticmethod
    def decode_message(line) -> Message:
        """
        Decode one line into a message.

        Args:
            line: bytes or str, with or without the trailing newline

        Returns:
            Message instance

        Raises:
            ProtocolError: If the line is not exactly one known message
        """
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError:
                raise ProtocolError("Message is not UTF-8", raw_data=line)

        if line.endswith("\n"):
            line = line[:-1]
        if "\n" in line:
            raise ProtocolError("Message spans several lines", raw_data=line)

        try:
            data = json.loads(line)
        except ValueError:
            raise ProtocolError("Invalid message", raw_data=line)

        if not isinstance(data, list) or not data or \
                not isinstance(data[0], str):
            raise ProtocolError("Invalid message", raw_data=line)

        cls = MESSAGES.get(data[0])
        if cls is None:
            raise ProtocolError(f"Unknown message: {data[0]}", raw_data=line)
        return cls.from_payload(data[1:])

    @staticmethod
    def read_message(rfile) -> Message:
        """
        Read one message from a binary file object.

        Raises:
            ProtocolError: If the line is malformed or too long
            ConnectionError: If the peer closed before sending anything
        """
        line = rfile.readline(WorkerProtocol.MAX_LINE_SIZE + 1)
        if not line:
            raise ConnectionError("Connection closed")
        if len(line) > WorkerProtocol.MAX_LINE_SIZE:
            raise ProtocolError("Message too large")
        if not line.endswith(b"\n"):
            raise ProtocolError("Incomplete message", raw_data=line)
        return WorkerProtocol.decode_message(line)

    @staticmethod
    def write_message(sock, message):
        sock.sendall(WorkerProtocol.encode_message(message))

    @staticmethod
    def read_load(rfile):
        """Read a ``GetLoad`` answer; True means busy.

        A missing or empty answer counts as busy.
        """
        line = rfile.readline(1024)
        if not line:
            return True
        return line.strip().lower().startswith(WorkerProtocol.LOAD_BUSY.encode())

    @staticmethod
    def write_load(sock, busy):
        answer = WorkerProtocol.LOAD_BUSY if busy else WorkerProtocol.LOAD_IDLE
        sock.sendall(answer.encode("ascii") + b"\n")

    @staticmethod
    def write_document(sock, headers, body):
        """
        Write a framed document.

        Args:
            sock: Socket to write to
            headers: list of (name, value) pairs; Content-Length is added
            body: bytes or str (UTF-8 encoded)
        """
        if isinstance(body, str):
            body = body.encode("utf-8")
        lines = ["%s: %s\r\n" % (k, v) for k, v in headers
                 if k.lower() != "content-length"]
        lines.append("Content-Length: %d\r\n" % len(body))
        lines.append("\r\n")
        sock.sendall("".join(lines).encode("latin-1") + body)

    @staticmethod
    def copy_document(rfile, out):
        """
        Copy a framed document from ``rfile`` to ``out`` unchanged.

        The header block is copied as received. With a Content-Length
        header exactly that many body bytes are copied, otherwise the body
        runs to end of stream.

        Returns:
            Number of bytes written

        Raises:
            ProtocolError: If the stream ends inside the header block or
                before Content-Length bytes arrived
        """
        written = 0
        length = None
        while True:
            line = rfile.readline(65537)
            if not line:
                raise ProtocolError("Unexpected end of headers")
            out.write(line)
            written += len(line)
            if line in (b"\r\n", b"\n"):
                break
            name, sep, value = line.partition(b":")
            if sep and name.strip().lower() == b"content-length":
                try:
                    length = int(value.strip())
                except ValueError:
                    raise ProtocolError("Invalid Content-Length",
                                        raw_data=line)
                if length < 0:
                    raise ProtocolError("Invalid Content-Length",
                                        raw_data=line)

        if length is None:
            while True:
                chunk = rfile.read1(CHUNK_SIZE) if hasattr(rfile, "read1") \
                    else rfile.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                written += len(chunk)
        else:
            remaining = length
            while remaining > 0:
                chunk = rfile.read(min(remaining, CHUNK_SIZE))
                if not chunk:
                    raise ProtocolError("Incomplete body")
                out.write(chunk)
                written += len(chunk)
                remaining -= len(chunk)

        out.flush()
        return written

    @staticmethod
    def read_document(rfile):
        """Read a framed document into memory, returning the raw bytes."""
        buf = io.BytesIO()
        WorkerProtocol.copy_document(rfile, buf)
        return buf.getvalue()

