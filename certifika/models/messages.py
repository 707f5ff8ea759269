import enum
import typing

import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .identifier import Identifier


class RevocationReason(enum.Enum):
    """Certificate revocation reasons.

    Defined in `5.3.1. Reason Code <https://tools.ietf.org/html/rfc5280#section-5.3.1>`_ of RFC 5280.
    """

    unspecified = 0
    keyCompromise = 1
    cACompromise = 2
    affiliationChanged = 3
    superseded = 4
    cessationOfOperation = 5
    certificateHold = 6
    # value 7 is unused
    removeFromCRL = 8
    privilegeWithdrawn = 9
    aACompromise = 10


def encode_cert(cert: x509.Certificate) -> str:
    # Encode certificate as JOSE Base-64 DER.
    return josepy.encode_b64jose(cert.public_bytes(encoding=serialization.Encoding.DER))


def decode_cert(b64der: str) -> x509.Certificate:
    return x509.load_der_x509_certificate(josepy.json_util.decode_b64jose(b64der))


def encode_csr(csr: x509.CertificateSigningRequest) -> str:
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der: str) -> x509.CertificateSigningRequest:
    return x509.load_der_x509_csr(josepy.json_util.decode_b64jose(b64der))


class Revocation(josepy.JSONObjectWithFields):
    """Message type for certificate revocation requests."""

    certificate: x509.Certificate = josepy.Field(
        "certificate", decoder=decode_cert, encoder=encode_cert
    )
    """The certificate to be revoked."""
    reason: RevocationReason = josepy.Field(
        "reason",
        decoder=RevocationReason,
        encoder=lambda reason: reason.value,
        omitempty=True,
    )
    """The reason for the revocation."""


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for certificate requests, posted to an order's finalize URL."""

    csr: x509.CertificateSigningRequest = josepy.Field(
        "csr", decoder=decode_csr, encoder=encode_csr
    )
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.Tuple[Identifier] = josepy.Field(
        "identifiers",
        decoder=lambda value: tuple(Identifier.from_json(item) for item in value),
    )
    """The requested identifiers."""

    @classmethod
    def from_data(
        cls,
        identifiers: typing.Union[
            typing.List[typing.Dict[str, str]], typing.List[str], typing.List[Identifier]
        ],
    ) -> "NewOrder":
        """Class factory that takes care of parsing the list of *identifiers*.

        :param identifiers: Either a :class:`list` of :class:`dict` where each dict consists of the keys *type* \
            and *value*, a :class:`list` of :class:`str` that represent the DNS names, or a :class:`list` of \
            :class:`~certifika.models.identifier.Identifier`.
        :return: The new order object.
        """
        if not identifiers:
            raise ValueError("An order needs at least one identifier")

        parsed = []
        for identifier in identifiers:
            if isinstance(identifier, Identifier):
                parsed.append(identifier)
            elif isinstance(identifier, dict):
                parsed.append(Identifier.from_json(identifier))
            elif isinstance(identifier, str):
                parsed.append(Identifier.from_name(identifier))
            else:
                raise ValueError(
                    "Could not decode identifiers list. Must be either List(str) or List(dict) where "
                    "the dict has two keys 'type' and 'value'"
                )

        return cls(identifiers=tuple(parsed))


class KeyChange(josepy.JSONObjectWithFields):
    """Payload of the inner JWS of an account key rollover.

    `7.3.5. Account Key Rollover <https://tools.ietf.org/html/rfc8555#section-7.3.5>`_
    """

    account: str = josepy.Field("account")
    """The account URL."""
    old_key: josepy.jwk.JWK = josepy.Field("oldKey", decoder=josepy.jwk.JWK.from_json)
    """The account's current public key."""
