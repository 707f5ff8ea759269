import asyncio
import logging
import typing
from dataclasses import dataclass, field

import josepy
from multidict import CIMultiDict

from certifika.client.directory import DirectoryClient
from certifika.client.encoding import json_dumps
from certifika.client.exceptions import EncodingError, ProtocolError, TransportError
from certifika.client.http import HttpTransport, RawResponse, error_for
from certifika.client.nonce import NoncePool
from certifika.client.signer import Signer, POST_AS_GET

logger = logging.getLogger(__name__)

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"

R = typing.TypeVar("R")


@dataclass
class AcmeResponse:
    """A successful response to a signed request."""

    status: int
    headers: CIMultiDict
    data: typing.Any
    """The parsed JSON body, or the body as text for other content types."""
    links: typing.Dict[str, typing.List[str]] = field(default_factory=dict)
    retry_after: typing.Optional[float] = None

    @property
    def location(self) -> typing.Optional[str]:
        return self.headers.get("Location")

    @classmethod
    def from_raw(cls, raw: RawResponse) -> "AcmeResponse":
        if raw.content_type in ("application/json", "application/problem+json"):
            data = raw.json()
        else:
            data = raw.text()
        return cls(raw.status, raw.headers, data, raw.links, raw.retry_after)

    def resource(self, cls: typing.Type[R], url: typing.Optional[str]) -> R:
        """Parses the body into the given resource type and attaches the resource's URL.

        :raises: :class:`EncodingError` If the body is not a valid *cls* object.
        """
        if not isinstance(self.data, dict):
            raise EncodingError(f"Expected a JSON object for {cls.__name__}, got {type(self.data).__name__}")
        try:
            obj = cls.from_json(self.data)
        except josepy.errors.DeserializationError as e:
            raise EncodingError(f"Malformed {cls.__name__}: {e}") from e
        return obj.with_url(url) if url else obj


class AcmeTransport:
    """Wraps an :class:`HttpTransport` with the conventions of ACME requests.

    Every request is a POST of a JWS that is signed with a fresh nonce from the
    :class:`NoncePool`. Nonces from all responses are captured into the pool, and error
    responses are turned into :class:`ProtocolError`.
    """

    NONCE_RETRIES = 3
    """The number of times a request is re-signed and resent after the error *badNonce*."""
    NETWORK_RETRIES = 3
    """The number of times a request is resent after a network failure."""

    def __init__(
        self,
        http: HttpTransport,
        directory: DirectoryClient,
        signer: Signer,
        nonces: typing.Optional[NoncePool] = None,
        *,
        nonce_retries: int = NONCE_RETRIES,
        network_retries: int = NETWORK_RETRIES,
        network_backoff: float = 1.0,
        sleep=asyncio.sleep,
    ):
        """Creates an :class:`AcmeTransport` instance.

        :param http: The raw HTTP transport.
        :param directory: The directory client used to resolve resource names and the *newNonce* URL.
        :param signer: The account key's signer.
        :param nonces: The nonce pool to use. A pool that fetches from *newNonce* is created if omitted.
        :param nonce_retries: Retry bound for *badNonce* errors.
        :param network_retries: Retry bound for network failures.
        :param network_backoff: Delay in seconds before the first network retry, doubled for each further one.
        """
        self._http = http
        self.directory = directory
        self.signer = signer
        self.nonces = nonces if nonces is not None else NoncePool()
        if self.nonces.fetch is None:
            self.nonces.fetch = self._fetch_nonce
        self.nonce_retries = nonce_retries
        self.network_retries = network_retries
        self.network_backoff = network_backoff
        self._sleep = sleep

    async def _resolve(self, resource: str) -> str:
        if resource.startswith(("https://", "http://")):
            return resource
        return await self.directory.url_for(resource)

    async def _fetch_nonce(self) -> str:
        # Single attempt, send_with_retry owns the retry budget.
        url = await self.directory.url_for("newNonce")
        resp = await self._http.request("HEAD", url)
        if resp.status not in (200, 204) or not resp.nonce:
            raise error_for(resp)
        return resp.nonce

    async def send(
        self,
        method: str,
        resource: str,
        payload=POST_AS_GET,
        kid: typing.Optional[str] = None,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
    ) -> AcmeResponse:
        """Signs and sends a single request without retrying.

        :param method: The HTTP method, *POST* for all signed ACME requests.
        :param resource: Absolute URL or directory resource name, e.g. *newOrder*.
        :param payload: The payload, :data:`~certifika.client.signer.POST_AS_GET` for an empty one.
        :param kid: The account URL to sign with, or *None* to embed the public key.
        :param headers: Additional request headers, e.g. *Accept*.
        :raises:

            * :class:`ProtocolError` If the server answered with an error.
            * :class:`TransportError` If the server could not be reached.

        :return: The response.
        """
        url = await self._resolve(resource)
        nonce = await self.nonces.take()
        body = json_dumps(self.signer.sign(self.signer.protected_header(nonce, url, kid), payload))

        request_headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if headers:
            request_headers.update(headers)

        logger.debug("%s %s (kid=%s, nonce=%s)", method, url, kid, nonce)
        raw = await self._http.request(method, url, data=body, headers=request_headers)

        # Error responses carry fresh nonces as well.
        await self.nonces.put(raw.nonce)

        if raw.ok:
            return AcmeResponse.from_raw(raw)

        error = error_for(raw)
        logger.debug("%s %s failed: %s", method, url, error)

        if error.code == "userActionRequired":
            await self.directory.invalidate()

        raise error

    async def send_with_retry(
        self,
        method: str,
        resource: str,
        payload=POST_AS_GET,
        kid: typing.Optional[str] = None,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
    ) -> AcmeResponse:
        """Like :meth:`send`, but transparently retries *badNonce* errors and network failures.

        A *badNonce* error is retried immediately with a fresh nonce up to :attr:`nonce_retries`
        times. Network failures are retried with exponential backoff up to :attr:`network_retries`
        times. All other errors, including *rateLimited* and HTTP 415, are raised unmodified.

        Nonce fetches count against the same network budget, so a request makes at most
        ``network_retries + 1`` attempts at reaching the server.
        """
        # The directory has its own retries; resolve once up front so they do not nest.
        url = await self._resolve(resource)
        await self.directory.get()

        nonce_failures = 0
        network_failures = 0
        while True:
            try:
                return await self.send(method, url, payload, kid, headers)
            except ProtocolError as e:
                if e.code != "badNonce" or nonce_failures >= self.nonce_retries:
                    raise
                nonce_failures += 1
                logger.info(
                    "Server rejected nonce for %s, retry %d/%d",
                    resource,
                    nonce_failures,
                    self.nonce_retries,
                )
            except TransportError as e:
                if network_failures >= self.network_retries:
                    raise
                delay = self.network_backoff * 2**network_failures
                network_failures += 1
                logger.warning(
                    "Request to %s failed (%s), retry %d/%d in %.1fs",
                    resource,
                    e,
                    network_failures,
                    self.network_retries,
                    delay,
                )
                await self._sleep(delay)

    async def post(self, resource: str, payload, kid: typing.Optional[str] = None, **kwargs) -> AcmeResponse:
        return await self.send_with_retry("POST", resource, payload, kid, **kwargs)

    async def post_as_get(self, url: str, kid: str, **kwargs) -> AcmeResponse:
        """Fetches a resource with a signed POST-as-GET request.

        `6.3. GET and POST-as-GET Requests <https://tools.ietf.org/html/rfc8555#section-6.3>`_
        """
        return await self.send_with_retry("POST", url, POST_AS_GET, kid, **kwargs)
