"""JSON Web Signatures (`RFC 7515 <https://tools.ietf.org/html/rfc7515>`_) for ACME requests.

Every ACME request body is a flattened JWS whose protected header carries the algorithm, the
signer's identity (either the full public key as *jwk* or the account URL as *kid*), the replay
nonce and the request URL.
"""
import logging
import typing

import josepy
from cryptography.hazmat.primitives.asymmetric import rsa, ec

from certifika.client.encoding import b64encode, b64decode, json_dumps, json_loads
from certifika.client.exceptions import SigningError, EncodingError
from certifika.util import pem_split

logger = logging.getLogger(__name__)

EC_ALGORITHMS = {
    "secp256r1": josepy.jwa.ES256,
    "secp384r1": josepy.jwa.ES384,
    "secp521r1": josepy.jwa.ES512,
}
"""Signature algorithms by curve, see `RFC 7518 <https://tools.ietf.org/html/rfc7518#section-3.4>`_."""

POST_AS_GET = None
"""Payload sentinel for POST-as-GET requests, encoded as the empty string."""


def algorithm_for(key) -> josepy.jwa.JWASignature:
    """Returns the signature algorithm that the given private key signs with.

    :param key: An RSA or EC private key.
    :raises: :class:`SigningError` If the key type or curve is not supported.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        return josepy.jwa.RS256
    elif isinstance(key, ec.EllipticCurvePrivateKey):
        try:
            return EC_ALGORITHMS[key.curve.name]
        except KeyError:
            raise SigningError(f"Unsupported curve {key.curve.name}")
    raise SigningError(f"Unsupported key type {type(key).__name__}")


class Signer:
    """Signs ACME requests with an account key pair.

    The algorithm is fixed by the key. Attempts to sign with a different algorithm are
    precondition violations and raise :class:`SigningError`.
    """

    def __init__(
        self,
        key: typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey],
        alg: typing.Union[str, josepy.jwa.JWASignature] = None,
    ):
        """Creates a :class:`Signer` instance.

        :param key: The account's private key.
        :param alg: The expected algorithm. Derived from the key if omitted.
        :raises: :class:`SigningError` If *alg* does not match the key.
        """
        expected = algorithm_for(key)
        if alg is not None:
            name = alg if isinstance(alg, str) else alg.name
            if name != expected.name:
                raise SigningError(f"Algorithm {name} cannot be used with a {expected.name} key")

        if isinstance(key, rsa.RSAPrivateKey):
            self._key = josepy.jwk.JWKRSA(key=key)
        else:
            self._key = josepy.jwk.JWKEC(key=key)
        self.alg = expected
        self._public_jwk = self._key.public_key()

    @classmethod
    def from_pem(cls, data: bytes, alg=None) -> "Signer":
        """Loads the signer's key from PEM data that contains exactly one private key.

        :raises: :class:`ValueError` If the data does not contain exactly one RSA or EC private key.
        """
        keys = pem_split(data.decode())
        if len(keys) != 1 or not isinstance(
            keys[0], (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)
        ):
            raise ValueError("Expected exactly one PEM encoded RSA or EC private key")
        return cls(keys[0], alg)

    @classmethod
    def from_file(cls, path, alg=None) -> "Signer":
        with open(path, "rb") as pem:
            return cls.from_pem(pem.read(), alg)

    @property
    def private_key(self):
        return self._key.key

    @property
    def public_jwk(self) -> josepy.jwk.JWK:
        """The public key as :class:`josepy.jwk.JWK`."""
        return self._public_jwk

    def thumbprint(self) -> str:
        """The base64url encoded SHA-256 JWK thumbprint of the public key.

        See `RFC 7638 <https://tools.ietf.org/html/rfc7638>`_.
        """
        return b64encode(self._key.thumbprint())

    def key_authorization(self, token: str) -> str:
        """
        8.1.  Key Authorizations
            …
            keyAuthorization = token || '.' || base64url(Thumbprint(accountKey))
            …
        """
        return f"{token}.{self.thumbprint()}"

    def protected_header(
        self, nonce: typing.Optional[str], url: str, kid: typing.Optional[str] = None
    ) -> dict:
        """Builds a protected header.

        :param nonce: The replay nonce. Omitted if *None*, as in the inner JWS of a key rollover.
        :param url: The request URL.
        :param kid: The account URL. The public key is embedded as *jwk* if *None*.
        :return: The protected header.
        """
        header = {"alg": self.alg.name}
        if kid is None:
            header["jwk"] = self._public_jwk.to_json()
        else:
            header["kid"] = kid
        if nonce is not None:
            header["nonce"] = nonce
        header["url"] = url
        return header

    def sign(self, protected: dict, payload) -> dict:
        """Signs the payload and returns the JWS in flattened JSON serialization.

        :param protected: The protected header, see :meth:`protected_header`.
        :param payload: The payload. :data:`POST_AS_GET` (*None*) results in an empty payload,
            :class:`bytes` are signed as they are and anything else is serialized as compact JSON.
        :raises: :class:`SigningError` If the header's algorithm does not match the key or the
            header does not carry exactly one of *jwk* and *kid*.
        :return: The JWS with the members *protected*, *payload* and *signature*.
        """
        if protected.get("alg") != self.alg.name:
            raise SigningError(
                f"Header algorithm {protected.get('alg')} does not match the {self.alg.name} key"
            )
        if ("jwk" in protected) == ("kid" in protected):
            raise SigningError("The protected header must contain exactly one of jwk and kid")

        protected64 = b64encode(json_dumps(protected))
        if payload is POST_AS_GET:
            payload64 = ""
        elif isinstance(payload, bytes):
            payload64 = b64encode(payload)
        else:
            payload64 = b64encode(json_dumps(payload))

        signature = self.alg.sign(
            self._key.key, f"{protected64}.{payload64}".encode("ascii")
        )
        return {
            "protected": protected64,
            "payload": payload64,
            "signature": b64encode(signature),
        }

    def verify(self, jws: dict) -> bool:
        """Verifies a flattened JWS against this signer's public key.

        :return: True if the signature is valid and was made with this signer's algorithm.
        """
        try:
            header = json_loads(b64decode(jws["protected"]))
            signature = b64decode(jws["signature"])
        except (KeyError, EncodingError) as e:
            logger.debug("Malformed JWS: %s", e)
            return False

        if header.get("alg") != self.alg.name:
            return False

        return self.alg.verify(
            self._public_jwk.key,
            f"{jws['protected']}.{jws['payload']}".encode("ascii"),
            signature,
        )
