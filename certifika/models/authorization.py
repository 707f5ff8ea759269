import datetime
import enum

import acme.fields
import josepy

from .base import Resource, decode_enum, decode_list_of
from .challenge import Challenge
from .identifier import Identifier


class AuthorizationStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Authorization(Resource):
    """ACME authorization object.

    `7.1.4. Authorization Objects <https://tools.ietf.org/html/rfc8555#section-7.1.4>`_
    """

    identifier: Identifier = josepy.Field("identifier", decoder=Identifier.from_json)
    """The identifier that the account is authorized to represent."""
    status: AuthorizationStatus = josepy.Field(
        "status", decoder=decode_enum(AuthorizationStatus)
    )
    """The authorization's status."""
    expires: datetime.datetime = acme.fields.RFC3339Field("expires", omitempty=True)
    """The :class:`datetime.datetime` from which the authorization is considered expired."""
    challenges: tuple = josepy.Field(
        "challenges", decoder=decode_list_of(Challenge), omitempty=True, default=()
    )
    """The challenges (:class:`~certifika.models.challenge.Challenge`) offered by the server."""
    wildcard: bool = josepy.Field("wildcard", omitempty=True, default=False)
    """Whether the authorization was created for a wildcard identifier."""

    @property
    def name(self) -> str:
        """The identifier's value as it was requested, i.e. including a wildcard prefix."""
        if self.wildcard:
            return f"*.{self.identifier.value}"
        return self.identifier.value

    def challenge_by_url(self, url: str) -> Challenge:
        for challenge in self.challenges:
            if challenge.url == url:
                return challenge
        raise KeyError(url)
