import enum

import josepy

from .base import decode_enum


class IdentifierType(str, enum.Enum):
    """The types that an :class:`Identifier` can have.

    `9.7.7. Identifier Types <https://tools.ietf.org/html/rfc8555#section-9.7.7>`_

    Subclassing :class:`str` simplifies json serialization using :func:`json.dumps`.
    """

    DNS = "dns"
    """
    RFC 8555 - Automatic Certificate Management Environment (ACME)

    https://www.rfc-editor.org/rfc/rfc8555.html#section-9.7.7
    """

    IP = "ip"
    """
    RFC 8738 - Automated Certificate Management Environment (ACME) IP Identifier Validation Extension

    https://www.rfc-editor.org/rfc/rfc8738.html
    """


class Identifier(josepy.JSONObjectWithFields):
    """ACME identifier object, e.g. a DNS name the certificate is requested for."""

    typ: IdentifierType = josepy.Field("type", decoder=decode_enum(IdentifierType))
    """The identifier's type (:class:`IdentifierType`)."""
    value: str = josepy.Field("value")
    """The identifier's value. In the case of a *dns* type identifier: the FQDN."""

    @classmethod
    def from_name(cls, name: str) -> "Identifier":
        return cls(typ=IdentifierType.DNS, value=name)

    def __str__(self):
        return self.value
