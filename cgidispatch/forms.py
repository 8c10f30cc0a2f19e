#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Form Decoding

Decodes ``application/x-www-form-urlencoded`` submissions into the list of
fields forwarded to a worker, and selects the part of the CGI environment
a worker may see.

Decoded octets map one-to-one to characters (Latin-1). Fields whose name
ends with ``_UTF8`` additionally have two-byte UTF-8 sequences of the
Latin-1 range folded into single characters, and lose the marker.

Image buttons submit ``name.x`` and ``name.y``. ``name.x=v`` expands to
``x=v`` and ``name=v``; ``name.y=v`` only to ``y=v`` unless the symmetric
policy is enabled. Any other dot in a field name is an error.
"""

import re
from urllib.parse import unquote_to_bytes

from cgidispatch.errors import FormDecodeError

UTF8_MARKER = "_UTF8"
COORDINATE_SEPARATOR = "."

# forwarded to workers; nothing else from the process environment is
SERVER_ENV_KEYS = (
    "REQUEST_METHOD",
    "REMOTE_HOST",
    "REMOTE_ADDR",
    "QUERY_STRING",
    "HTTP_COOKIE",
    "SCRIPT_NAME",
    "SERVER_NAME",
    "SERVER_PORT",
)

_UTF8_PAIR = re.compile("[\xc2\xc3][\x80-\xbf]")


def url_decode(text):
    """Percent-decode ``text``; ``+`` stands for a space."""
    if isinstance(text, str):
        text = text.encode("latin-1")
    return unquote_to_bytes(text.replace(b"+", b" ")).decode("latin-1")


def fold_utf8(text):
    """Fold two-byte UTF-8 sequences of Latin-1 code points."""
    def _fold(m):
        lead, trail = m.group(0)
        return chr(((ord(lead) & 0x1f) << 6) | (ord(trail) & 0x3f))
    return _UTF8_PAIR.sub(_fold, text)


def expand_field(name, value, symmetric=False):
    """Return the (name, value) pairs one decoded field stands for."""
    if name.endswith(UTF8_MARKER):
        name = name[:-len(UTF8_MARKER)]
        value = fold_utf8(value)

    if COORDINATE_SEPARATOR not in name:
        return [(name, value)]

    base, _sep, coord = name.rpartition(COORDINATE_SEPARATOR)
    if COORDINATE_SEPARATOR in base or coord not in ("x", "y"):
        raise FormDecodeError("Illegal field name", field=name)

    if coord == "x":
        return [("x", value), (base, value)]
    if symmetric:
        return [("y", value), (base, value)]
    return [("y", value)]


def decode_form(data, symmetric=False):
    """Decode an urlencoded body into a list of (name, value) pairs.

    Raises:
        FormDecodeError: on an illegal field name
    """
    if isinstance(data, bytes):
        data = data.decode("latin-1")

    fields = []
    for part in data.split("&"):
        if not part:
            continue
        raw_name, _sep, raw_value = part.partition("=")
        fields.extend(expand_field(url_decode(raw_name),
                                   url_decode(raw_value),
                                   symmetric=symmetric))
    return fields


def read_form_data(environ, stdin):
    """Read the raw submission of a CGI request.

    ``POST`` bodies are read from ``stdin`` (``CONTENT_LENGTH`` bytes);
    other methods submit nothing, their query string travels in the
    server environment.
    """
    if environ.get("REQUEST_METHOD", "GET").upper() != "POST":
        return b""
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        raise FormDecodeError("Invalid CONTENT_LENGTH")
    if length <= 0:
        return b""

    chunks = []
    while length > 0:
        chunk = stdin.read(length)
        if not chunk:
            break
        chunks.append(chunk)
        length -= len(chunk)
    return b"".join(chunks)


def server_env(environ):
    """Return the allow-listed environment pairs for a worker."""
    return [(key, environ.get(key, "")) for key in SERVER_ENV_KEYS]


def pop_field(fields, name):
    """Remove every ``name`` field; returns (value or None, other fields)."""
    value = None
    rest = []
    for k, v in fields:
        if k == name:
            if value is None:
                value = v
            continue
        rest.append((k, v))
    return value, rest
