import datetime
import enum
import typing

import acme.fields
import acme.messages
import josepy

from .base import Resource, decode_enum


class ChallengeStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class ChallengeType(str, enum.Enum):
    """The types that a :class:`Challenge` can have.

    Subclassing :class:`str` simplifies json serialization using :func:`json.dumps`.
    """

    HTTP_01 = "http-01"
    """The ACME *http-01* challenge type.
    See `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_"""
    DNS_01 = "dns-01"
    """The ACME *dns-01* challenge type.
    See `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_"""
    TLS_ALPN_01 = "tls-alpn-01"
    """The ACME *tls-alpn-01* challenge type.
    See `RFC 8737 <https://tools.ietf.org/html/rfc8737>`_"""


class Challenge(Resource):
    """ACME challenge object.

    `8. Identifier Validation Challenges <https://tools.ietf.org/html/rfc8555#section-8>`_

    The type is kept as a plain string, so that challenge types the client does not know
    about can still be parsed and ignored.
    """

    url: str = josepy.Field("url")
    typ: str = josepy.Field("type")
    """The challenge's type, compare with :class:`ChallengeType`."""
    status: ChallengeStatus = josepy.Field("status", decoder=decode_enum(ChallengeStatus))
    """The challenge's status."""
    token: typing.Optional[str] = josepy.Field("token", omitempty=True)
    """The token that is used during the challenge validation process.
    See `8.1.  Key Authorizations <https://tools.ietf.org/html/rfc8555#section-8.1>`_"""
    validated: datetime.datetime = acme.fields.RFC3339Field("validated", omitempty=True)
    """The :class:`datetime.datetime` when the challenge was validated."""
    error: acme.messages.Error = josepy.Field(
        "error", decoder=acme.messages.Error.from_json, omitempty=True
    )
    """The error that occurred while validating the challenge."""
