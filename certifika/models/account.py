import enum
import typing

import josepy

from .base import Resource, decode_enum


class AccountStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class Account(Resource):
    """ACME account object.

    This is the representation of the account that the :class:`~certifika.client.AcmeClient` uses
    internally. The account URL doubles as the key ID that is sent to the server with every
    request once the account exists.

    `7.1.2. Account Objects <https://tools.ietf.org/html/rfc8555#section-7.1.2>`_
    """

    status: AccountStatus = josepy.Field("status", decoder=decode_enum(AccountStatus))
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True, default=())
    """The account's contact URIs."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""

    @property
    def kid(self) -> str:
        """The account's key ID, i.e. its URL."""
        return self.url
