#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""Tests for form decoding."""

import io

import pytest

from cgidispatch.errors import FormDecodeError
from cgidispatch.forms import (
    SERVER_ENV_KEYS,
    decode_form,
    expand_field,
    fold_utf8,
    pop_field,
    read_form_data,
    server_env,
    url_decode,
)


class TestUrlDecode:

    def test_plus_is_space(self):
        assert url_decode("a+b%20c") == "a b c"

    def test_escaped_plus(self):
        assert url_decode("1%2B1") == "1+1"

    def test_every_octet(self):
        encoded = "".join("%%%02X" % i for i in range(256))
        assert url_decode(encoded) == "".join(chr(i) for i in range(256))

    def test_lowercase_hex(self):
        assert url_decode("%e9") == "\xe9"

    def test_bytes_input(self):
        assert url_decode(b"x%3Dy") == "x=y"

    def test_raw_high_octets(self):
        assert url_decode(b"caf\xe9+%E9") == "caf\xe9 \xe9"
        assert url_decode("caf\xe9") == "caf\xe9"


class TestFoldUtf8:

    def test_latin1_range(self):
        # "Jérôme" sent as UTF-8, decoded octet per character
        assert fold_utf8("J\xc3\xa9r\xc3\xb4me") == "J\xe9r\xf4me"
        assert fold_utf8("\xc2\xa0") == "\xa0"

    def test_other_sequences_untouched(self):
        # three-byte sequence for the euro sign
        assert fold_utf8("\xe2\x82\xac") == "\xe2\x82\xac"

    def test_plain_text(self):
        assert fold_utf8("abc") == "abc"


class TestExpandField:

    def test_plain(self):
        assert expand_field("name", "v") == [("name", "v")]

    def test_utf8_marker(self):
        assert expand_field("city_UTF8", "K\xc3\xb6ln") == [("city", "K\xf6ln")]

    def test_no_marker_no_fold(self):
        assert expand_field("city", "K\xc3\xb6ln") == [("city", "K\xc3\xb6ln")]

    def test_x_coordinate(self):
        assert expand_field("go.x", "12") == [("x", "12"), ("go", "12")]

    def test_y_coordinate_asymmetric(self):
        assert expand_field("go.y", "7") == [("y", "7")]

    def test_y_coordinate_symmetric(self):
        assert expand_field("go.y", "7", symmetric=True) == \
            [("y", "7"), ("go", "7")]

    @pytest.mark.parametrize("name", ["go.z", "a.b", "a.b.x", ".", "go."])
    def test_illegal_names(self, name):
        with pytest.raises(FormDecodeError) as exc_info:
            expand_field(name, "1")
        assert exc_info.value.field == name


class TestDecodeForm:

    def test_basic(self):
        assert decode_form("a=1&b=two+words") == [("a", "1"),
                                                  ("b", "two words")]

    def test_order_and_duplicates(self):
        assert decode_form("a=1&b=2&a=3") == [("a", "1"), ("b", "2"),
                                              ("a", "3")]

    def test_raw_high_octets(self):
        # unescaped octets keep their one-to-one mapping
        assert decode_form(b"a=\xe9") == [("a", "\xe9")]
        assert decode_form(b"n\xe9e=d\xfb") == [("n\xe9e", "d\xfb")]
        assert decode_form(b"name_UTF8=J\xc3\xa9") == [("name", "J\xe9")]

    def test_empty_parts(self):
        assert decode_form("") == []
        assert decode_form("a=1&&b=") == [("a", "1"), ("b", "")]

    def test_missing_equals(self):
        assert decode_form("flag") == [("flag", "")]

    def test_value_with_equals(self):
        assert decode_form("q=a%3Db=c") == [("q", "a=b=c")]

    def test_image_button(self):
        assert decode_form("go.x=3&go.y=4") == [("x", "3"), ("go", "3"),
                                                ("y", "4")]
        assert decode_form("go.x=3&go.y=4", symmetric=True) == \
            [("x", "3"), ("go", "3"), ("y", "4"), ("go", "4")]

    def test_encoded_name(self):
        assert decode_form("name_UTF8=J%C3%A9r%C3%B4me") == \
            [("name", "J\xe9r\xf4me")]

    def test_illegal_name(self):
        with pytest.raises(FormDecodeError):
            decode_form("a=1&bad.name=2")

    def test_bytes(self):
        assert decode_form(b"a=%FF") == [("a", "\xff")]


class TestRequestInput:

    def test_post_body(self):
        environ = {"REQUEST_METHOD": "POST", "CONTENT_LENGTH": "5"}
        assert read_form_data(environ, io.BytesIO(b"a=1&bXYZ")) == b"a=1&b"

    def test_short_body(self):
        environ = {"REQUEST_METHOD": "POST", "CONTENT_LENGTH": "50"}
        assert read_form_data(environ, io.BytesIO(b"a=1")) == b"a=1"

    def test_get_has_no_form(self):
        environ = {"REQUEST_METHOD": "GET", "QUERY_STRING": "a=1"}
        assert read_form_data(environ, io.BytesIO(b"a=1")) == b""

    def test_missing_length(self):
        assert read_form_data({"REQUEST_METHOD": "POST"},
                              io.BytesIO(b"a=1")) == b""

    def test_invalid_length(self):
        with pytest.raises(FormDecodeError):
            read_form_data({"REQUEST_METHOD": "POST",
                            "CONTENT_LENGTH": "many"}, io.BytesIO())

    def test_server_env_allow_list(self):
        environ = {"REQUEST_METHOD": "POST", "PATH": "/bin",
                   "HTTP_COOKIE": "sid=1", "SECRET": "x"}
        env = server_env(environ)
        assert [k for k, _ in env] == list(SERVER_ENV_KEYS)
        assert dict(env)["HTTP_COOKIE"] == "sid=1"
        assert dict(env)["REMOTE_HOST"] == ""
        assert "PATH" not in dict(env)

    def test_pop_field(self):
        value, rest = pop_field([("SCRIPTKEY", "k1"), ("a", "1"),
                                 ("SCRIPTKEY", "k2")], "SCRIPTKEY")
        assert value == "k1"
        assert rest == [("a", "1")]

    def test_pop_missing_field(self):
        assert pop_field([("a", "1")], "SCRIPTKEY") == (None, [("a", "1")])
