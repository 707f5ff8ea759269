import enum
import typing

import josepy


def decode_enum(enum_cls: typing.Type[enum.Enum]):
    """Returns a :class:`josepy.Field` decoder that maps a JSON string onto a member of *enum_cls*.

    Unknown values raise :class:`josepy.errors.DeserializationError` instead of :class:`ValueError`,
    so that they surface like any other malformed resource.
    """

    def decoder(value):
        try:
            return enum_cls(value)
        except ValueError as error:
            raise josepy.errors.DeserializationError(error)

    decoder.__name__ = f"decode_{enum_cls.__name__}"
    return decoder


def decode_list_of(cls: typing.Type[josepy.JSONDeSerializable]):
    """Returns a decoder for JSON arrays whose items are *cls* objects."""

    def decoder(value):
        if not isinstance(value, list):
            raise josepy.errors.DeserializationError(f"Expected a list, got {value!r}")
        return tuple(cls.from_json(item) for item in value)

    return decoder


class Resource(josepy.JSONObjectWithFields):
    """Base class for ACME resources that are addressed by a URL.

    The server does not include the resource's URL in its body, so the client copies it
    from the request URL or the *Location* header into the :attr:`url` field.
    """

    url: str = josepy.Field("url", omitempty=True)
    """The resource's URL."""

    def with_url(self, url: str):
        return self.update(url=url)
