import datetime
import enum

import acme.fields
import acme.messages
import josepy

from .base import Resource, decode_enum, decode_list_of
from .identifier import Identifier


class OrderStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class Order(Resource):
    """ACME order object.

    `7.1.3. Order Objects <https://tools.ietf.org/html/rfc8555#section-7.1.3>`_
    """

    status: OrderStatus = josepy.Field("status", decoder=decode_enum(OrderStatus))
    """The order's status."""
    expires: datetime.datetime = acme.fields.RFC3339Field("expires", omitempty=True)
    """The :class:`datetime.datetime` from which the order is considered expired."""
    identifiers: tuple = josepy.Field("identifiers", decoder=decode_list_of(Identifier))
    """The identifiers (:class:`~certifika.models.identifier.Identifier`) the order contains."""
    authorizations: tuple = josepy.Field("authorizations", omitempty=True, default=())
    """URLs of the authorizations the client needs to complete."""
    finalize: str = josepy.Field("finalize")
    """URL that the CSR is to be posted to once all authorizations are valid."""
    certificate: str = josepy.Field("certificate", omitempty=True)
    """URL of the issued certificate, present once the order is *valid*."""
    not_before: datetime.datetime = acme.fields.RFC3339Field("notBefore", omitempty=True)
    not_after: datetime.datetime = acme.fields.RFC3339Field("notAfter", omitempty=True)
    error: acme.messages.Error = josepy.Field(
        "error", decoder=acme.messages.Error.from_json, omitempty=True
    )
    """The error that occurred while processing the order."""

    @property
    def names(self) -> frozenset:
        """The lower-cased identifier values."""
        return frozenset(identifier.value.lower() for identifier in self.identifiers)
