#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""Tests for the worker protocol."""

import io
import json

import pytest

from cgidispatch.errors import ProtocolError
from cgidispatch.protocol import (
    CleanServer,
    GetLoad,
    MESSAGES,
    ShowStatus,
    SketchHandlers,
    SketchStatus,
    StopCgiServer,
    Submit,
    WorkerProtocol,
)


class FakeSocket:
    def __init__(self):
        self.sent = b""

    def sendall(self, data):
        self.sent += data


class TestMessageEncoding:
    """Tests for message encoding/decoding."""

    def test_encode_getload(self):
        assert WorkerProtocol.encode_message(GetLoad()) == b'["GetLoad"]\n'

    def test_encode_submit(self):
        msg = Submit([("REQUEST_METHOD", "POST")], [("a", "1")])
        line = WorkerProtocol.encode_message(msg)
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert json.loads(line) == ["Submit", [["REQUEST_METHOD", "POST"]],
                                    [["a", "1"]]]

    @pytest.mark.parametrize("msg", [
        GetLoad(), SketchStatus(), ShowStatus(), SketchHandlers(),
        CleanServer(), StopCgiServer(),
        Submit(),
        Submit([("QUERY_STRING", "a=1&b=2")],
               [("name", "J\xe9r\xf4me"), ("text", "line1\nline2\r\n"),
                ("", "")]),
    ])
    def test_round_trip(self, msg):
        line = WorkerProtocol.encode_message(msg)
        assert b"\n" not in line[:-1]
        assert WorkerProtocol.decode_message(line) == msg

    def test_all_variants_registered(self):
        assert set(MESSAGES) == {
            "Submit", "GetLoad", "SketchStatus", "ShowStatus",
            "SketchHandlers", "CleanServer", "StopCgiServer",
        }

    def test_decode_str(self):
        assert WorkerProtocol.decode_message('["ShowStatus"]') == ShowStatus()

    @pytest.mark.parametrize("line", [
        b"",
        b"GetLoad\n",
        b'{"tag": "GetLoad"}\n',
        b"[]\n",
        b"[1]\n",
        b'["Shutdown"]\n',
        b'["GetLoad", 1]\n',
        b'["Submit"]\n',
        b'["Submit", [], [], []]\n',
        b'["Submit", [["a"]], []]\n',
        b'["Submit", [["a", 1]], []]\n',
        b'["Submit", {}, []]\n',
        b'["GetLoad"]\n["GetLoad"]\n',
        b'\xff\xfe\n',
    ])
    def test_decode_rejects(self, line):
        with pytest.raises(ProtocolError):
            WorkerProtocol.decode_message(line)

    def test_unknown_message_named(self):
        with pytest.raises(ProtocolError) as exc_info:
            WorkerProtocol.decode_message(b'["Shutdown"]\n')
        assert "Shutdown" in str(exc_info.value)


class TestMessageFraming:
    """Tests for reading messages and load answers."""

    def test_read_message(self):
        rfile = io.BytesIO(b'["GetLoad"]\n')
        assert WorkerProtocol.read_message(rfile) == GetLoad()

    def test_read_message_eof(self):
        with pytest.raises(ConnectionError):
            WorkerProtocol.read_message(io.BytesIO(b""))

    def test_read_message_incomplete(self):
        with pytest.raises(ProtocolError):
            WorkerProtocol.read_message(io.BytesIO(b'["GetLoad"]'))

    def test_read_message_too_large(self, monkeypatch):
        monkeypatch.setattr(WorkerProtocol, "MAX_LINE_SIZE", 8)
        with pytest.raises(ProtocolError) as exc_info:
            WorkerProtocol.read_message(io.BytesIO(b'["GetLoad", "xxxxx"]\n'))
        assert "too large" in str(exc_info.value)

    def test_write_message(self):
        sock = FakeSocket()
        WorkerProtocol.write_message(sock, StopCgiServer())
        assert sock.sent == b'["StopCgiServer"]\n'

    @pytest.mark.parametrize("busy", [True, False])
    def test_load_round_trip(self, busy):
        sock = FakeSocket()
        WorkerProtocol.write_load(sock, busy)
        assert WorkerProtocol.read_load(io.BytesIO(sock.sent)) is busy

    def test_load_no_answer_is_busy(self):
        assert WorkerProtocol.read_load(io.BytesIO(b"")) is True

    def test_load_wire_format(self):
        sock = FakeSocket()
        WorkerProtocol.write_load(sock, False)
        assert sock.sent == b"idle\n"


class TestDocuments:
    """Tests for framed documents."""

    def test_write_document_adds_length(self):
        sock = FakeSocket()
        WorkerProtocol.write_document(
            sock, [("Content-Type", "text/html"), ("Content-Length", "99")],
            "<p>\xe9</p>")
        body = "<p>\xe9</p>".encode("utf-8")
        assert sock.sent == (b"Content-Type: text/html\r\n"
                             b"Content-Length: %d\r\n\r\n" % len(body) + body)

    def test_copy_with_length(self):
        raw = b"Content-Type: text/plain\r\nContent-Length: 5\r\n\r\nhello"
        out = io.BytesIO()
        written = WorkerProtocol.copy_document(io.BytesIO(raw + b"trailing"),
                                               out)
        assert out.getvalue() == raw
        assert written == len(raw)

    def test_copy_to_eof(self):
        raw = b"Content-Type: text/plain\n\n" + b"x" * 100000
        out = io.BytesIO()
        WorkerProtocol.copy_document(io.BytesIO(raw), out)
        assert out.getvalue() == raw

    def test_copy_is_byte_exact(self):
        body = bytes(range(256)) * 4
        raw = b"X-Custom:  odd  spacing \r\nContent-length:1024\r\n\r\n" + body
        out = io.BytesIO()
        WorkerProtocol.copy_document(io.BytesIO(raw), out)
        assert out.getvalue() == raw

    def test_truncated_body(self):
        raw = b"Content-Length: 10\r\n\r\nshort"
        with pytest.raises(ProtocolError):
            WorkerProtocol.copy_document(io.BytesIO(raw), io.BytesIO())

    def test_truncated_headers(self):
        with pytest.raises(ProtocolError):
            WorkerProtocol.copy_document(io.BytesIO(b"Content-Type: x\r\n"),
                                         io.BytesIO())

    def test_empty_reply(self):
        with pytest.raises(ProtocolError):
            WorkerProtocol.read_document(io.BytesIO(b""))

    @pytest.mark.parametrize("value", [b"abc", b"-1"])
    def test_invalid_length(self, value):
        raw = b"Content-Length: " + value + b"\r\n\r\n"
        with pytest.raises(ProtocolError):
            WorkerProtocol.read_document(io.BytesIO(raw))

    def test_read_document(self):
        sock = FakeSocket()
        WorkerProtocol.write_document(sock, [("Content-Type", "text/plain")],
                                      b"body")
        assert WorkerProtocol.read_document(io.BytesIO(sock.sent)) == sock.sent
