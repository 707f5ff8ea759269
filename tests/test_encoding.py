import json

import pytest

from certifika.client.encoding import b64decode, b64encode, json_dumps, json_loads
from certifika.client.exceptions import EncodingError, MalformedEncoding
from certifika.models import Identifier


@pytest.mark.parametrize("data", [b"", b"\x00", b"ab", b"abc", b"\xff\xfe\xfd\xfc", bytes(range(256))])
def test_b64_roundtrip(data):
    encoded = b64encode(data)
    assert "=" not in encoded
    assert b64decode(encoded) == data


def test_b64encode_is_urlsafe():
    assert b64encode(b"\xfb\xff") == "-_8"


@pytest.mark.parametrize("data", ["YQ==", "YWI=", "a+b/", "ab cd", "abcde", "é"])
def test_b64decode_rejects(data):
    with pytest.raises(EncodingError):
        b64decode(data)


def test_malformed_encoding_alias():
    assert MalformedEncoding is EncodingError
    with pytest.raises(ValueError):
        b64decode("Zg=")


def test_b64decode_accepts_bytes():
    assert b64decode(b"Zm9v") == b"foo"


def test_json_dumps_compact():
    assert json_dumps({"a": [1, 2], "b": "ü"}) == '{"a":[1,2],"b":"ü"}'.encode("utf-8")


def test_json_dumps_josepy_object():
    dumped = json.loads(json_dumps(Identifier.from_name("example.com")))
    assert dumped == {"type": "dns", "value": "example.com"}


def test_json_loads_malformed():
    with pytest.raises(EncodingError):
        json_loads(b"{not json")
    assert json_loads(b'{"a":1}') == {"a": 1}
