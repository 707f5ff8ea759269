"""base64url and JSON helpers shared by all protocol components.

`RFC 8555 <https://tools.ietf.org/html/rfc8555#section-6.1>`_ requires binary fields to be
base64url encoded without trailing '=' characters and encoded values that include trailing
'=' characters to be rejected.
"""
import json
import re
import typing

import josepy

from certifika.client.exceptions import EncodingError

_B64URL_RE = re.compile(r"[A-Za-z0-9_-]*")


def b64encode(data: bytes) -> str:
    """Encodes the given bytes as base64url without padding.

    :param data: The data to encode.
    :return: The encoded string, never containing '='.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(f"b64encode expects bytes, got {type(data).__name__}")
    return josepy.b64.b64encode(bytes(data)).decode("ascii")


def b64decode(data: typing.Union[str, bytes]) -> bytes:
    """Strictly decodes a base64url string without padding.

    :param data: The encoded data.
    :raises: :class:`EncodingError` If the input contains padding, characters outside the URL-safe
        alphabet or has an impossible length.
    :return: The decoded bytes.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("ascii")
        except UnicodeDecodeError as e:
            raise EncodingError(f"Non-ASCII data in base64url input: {e}") from e

    if "=" in data:
        raise EncodingError("Padded base64url input is rejected")
    if not _B64URL_RE.fullmatch(data):
        raise EncodingError("Input contains characters outside the base64url alphabet")
    if len(data) % 4 == 1:
        raise EncodingError(f"Invalid base64url length {len(data)}")

    return josepy.b64.b64decode(data)


def json_dumps(obj: typing.Any) -> bytes:
    """Serializes the object as compact UTF-8 JSON.

    The signature covers the exact bytes, so no insignificant whitespace is emitted.

    :param obj: A JSON compatible value or a :class:`josepy.JSONDeSerializable`.
    :return: The serialized bytes.
    """
    if isinstance(obj, josepy.JSONDeSerializable):
        obj = obj.to_json()
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def json_loads(data: typing.Union[str, bytes]) -> typing.Any:
    try:
        return json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise EncodingError(f"Malformed JSON: {e}") from e
