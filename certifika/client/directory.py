import asyncio
import logging
import types
import typing

import josepy

from certifika.client.exceptions import EncodingError, ProtocolError
from certifika.client.http import HttpTransport, request_with_retries, error_for

logger = logging.getLogger(__name__)

LETSENCRYPT_DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"


class DirectoryMeta(josepy.JSONObjectWithFields):
    """The directory's optional metadata.

    `7.1.1. Directory <https://tools.ietf.org/html/rfc8555#section-7.1.1>`_
    """

    terms_of_service: str = josepy.Field("termsOfService", omitempty=True)
    website: str = josepy.Field("website", omitempty=True)
    caa_identities: tuple = josepy.Field("caaIdentities", omitempty=True, default=())
    external_account_required: bool = josepy.Field(
        "externalAccountRequired", omitempty=True, default=False
    )


class Directory:
    """The ACME directory: resource names mapped to URLs, plus metadata.

    Immutable once fetched.
    """

    def __init__(self, url: str, jobj: dict):
        if not isinstance(jobj, dict):
            raise EncodingError(f"The directory at {url} is not a JSON object")

        self.url = url
        self._resources = types.MappingProxyType(
            {k: v for k, v in jobj.items() if k != "meta" and isinstance(v, str)}
        )
        try:
            self.meta = DirectoryMeta.from_json(jobj.get("meta") or {})
        except josepy.errors.DeserializationError as e:
            raise EncodingError(f"Malformed directory metadata: {e}") from e

    def __getitem__(self, name: str) -> str:
        return self._resources[name]

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def get(self, name: str, default=None):
        return self._resources.get(name, default)

    @property
    def resources(self) -> typing.Mapping[str, str]:
        return self._resources


class DirectoryClient:
    """Fetches the ACME directory on first use and caches it.

    Readers get the cached directory without locking; fetching and invalidation are
    serialized by a lock.
    """

    def __init__(
        self,
        url: str,
        http: HttpTransport,
        *,
        retries: int = 3,
        backoff: float = 1.0,
        sleep=asyncio.sleep,
    ):
        self.url = url
        self._http = http
        self._retries = retries
        self._backoff = backoff
        self._sleep = sleep
        self._directory: typing.Optional[Directory] = None
        self._lock = asyncio.Lock()

    async def get(self) -> Directory:
        """Returns the directory, fetching it if it is not cached.

        :raises:

            * :class:`TransportError` If the server could not be reached.
            * :class:`ProtocolError` If the server answered with an error.
        """
        directory = self._directory
        if directory is not None:
            return directory

        async with self._lock:
            if self._directory is None:
                self._directory = await self._fetch()
            return self._directory

    async def _fetch(self) -> Directory:
        logger.debug("Fetching directory %s", self.url)
        resp = await request_with_retries(
            self._http,
            "GET",
            self.url,
            retries=self._retries,
            backoff=self._backoff,
            sleep=self._sleep,
        )
        if not resp.ok:
            raise error_for(resp)

        directory = Directory(self.url, resp.json())
        logger.info("Fetched directory %s", self.url)
        return directory

    async def url_for(self, name: str) -> str:
        """Maps a resource name to its URL.

        :param name: The resource name, e.g. *newOrder*.
        :raises: :class:`ProtocolError` If the directory does not offer the resource.
        """
        directory = await self.get()
        try:
            return directory[name]
        except KeyError:
            raise ProtocolError(None, f"The directory at {self.url} does not offer {name}")

    async def invalidate(self) -> None:
        """Drops the cached directory, so that the next access fetches it again."""
        async with self._lock:
            self._directory = None
        logger.info("Invalidated directory %s", self.url)
