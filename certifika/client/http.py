import abc
import asyncio
import datetime
import email.utils
import logging
import re
import ssl
import typing
from dataclasses import dataclass

import acme.messages
import josepy
from aiohttp import ClientSession, ClientError, ClientTimeout
from multidict import CIMultiDict

from certifika.client.encoding import json_loads
from certifika.client.exceptions import ProtocolError, TransportError, EncodingError
from certifika.version import __version__

logger = logging.getLogger(__name__)

USER_AGENT = f"certifika/{__version__}"
"""`RFC 8555 <https://tools.ietf.org/html/rfc8555#section-6.1>`_ asks clients to identify themselves."""

_LINK_RE = re.compile(r'<(?P<url>[^>]*)>\s*;\s*rel="?(?P<rel>[^";,]+)"?')


def parse_retry_after(
    value: typing.Optional[str], now: typing.Optional[datetime.datetime] = None
) -> typing.Optional[float]:
    """Parses a *Retry-After* header value.

    :param value: Either a number of seconds or an HTTP date.
    :param now: The current time, defaults to :func:`datetime.datetime.now` in UTC.
    :return: The number of seconds to wait, or *None* if the value is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable Retry-After header %r", value)
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return max(0.0, (when - now).total_seconds())


@dataclass
class RawResponse:
    """An HTTP response as returned by an :class:`HttpTransport`."""

    status: int
    headers: CIMultiDict
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "").split(";")[0].strip().lower()

    @property
    def retry_after(self) -> typing.Optional[float]:
        return parse_retry_after(self.headers.get("Retry-After"))

    @property
    def location(self) -> typing.Optional[str]:
        return self.headers.get("Location")

    @property
    def nonce(self) -> typing.Optional[str]:
        return self.headers.get("Replay-Nonce")

    @property
    def links(self) -> typing.Dict[str, typing.List[str]]:
        """The *Link* header targets, keyed by relation type."""
        links = {}
        for header in self.headers.getall("Link", []):
            for match in _LINK_RE.finditer(header):
                links.setdefault(match.group("rel"), []).append(match.group("url"))
        return links

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self):
        return json_loads(self.body)


def error_for(response: RawResponse) -> ProtocolError:
    """Builds the :class:`ProtocolError` that describes a non-successful response.

    Bodies of type *application/problem+json* are parsed into an :class:`acme.messages.Error`.

    :param response: The failed response.
    :return: The error to raise.
    """
    if response.content_type == "application/problem+json":
        try:
            document = response.json()
            problem = acme.messages.Error.from_json(document)
        except (EncodingError, josepy.errors.DeserializationError) as e:
            logger.warning("Could not parse problem document: %s", e)
        else:
            return ProtocolError(
                problem.typ,
                problem.detail or problem.title or "",
                status=response.status,
                retry_after=response.retry_after,
                problem=problem,
                document=document,
            )

    return ProtocolError(
        None,
        response.text()[:512],
        status=response.status,
        retry_after=response.retry_after,
    )


class HttpTransport(abc.ABC):
    """Raw HTTP transport: a function from (method, url, body, headers) to (status, headers, body).

    Implementations raise :class:`TransportError` on network failures.
    """

    @abc.abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        data: typing.Optional[bytes] = None,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
    ) -> RawResponse:
        pass

    async def close(self) -> None:
        pass


class AiohttpTransport(HttpTransport):
    """:class:`HttpTransport` backed by an :class:`aiohttp.ClientSession`."""

    def __init__(self, *, server_cert: str = None, timeout: float = 30.0):
        """Creates an :class:`AiohttpTransport` instance.

        :param server_cert: Path of an additional CA certificate to trust, e.g. for test servers.
        :param timeout: Total timeout in seconds for a single request.
        """
        self._ssl_context = ssl.create_default_context()

        if server_cert:
            # Add our self-signed server cert for testing purposes.
            self._ssl_context.load_verify_locations(cafile=server_cert)

        self._timeout = ClientTimeout(total=timeout)
        self._session: typing.Optional[ClientSession] = None

    def _get_session(self) -> ClientSession:
        # The session binds to the running event loop, so it is created on first use.
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                headers={"User-Agent": USER_AGENT}, timeout=self._timeout
            )
        return self._session

    async def request(self, method, url, data=None, headers=None) -> RawResponse:
        session = self._get_session()
        try:
            async with session.request(
                method, url, data=data, headers=headers, ssl=self._ssl_context
            ) as resp:
                body = await resp.read()
                return RawResponse(resp.status, CIMultiDict(resp.headers), body)
        except (ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"{method} {url} failed: {e!r}") from e

    async def close(self):
        """Closes the underlying session.

        The transport may still be used afterwards, a new session is created on demand.
        """
        if self._session is not None:
            await self._session.close()
            self._session = None


async def request_with_retries(
    http: HttpTransport,
    method: str,
    url: str,
    *,
    retries: int,
    backoff: float,
    sleep=asyncio.sleep,
    **kwargs,
) -> RawResponse:
    """Performs an unsigned request, retrying network failures with exponential backoff.

    :param http: The transport to use.
    :param retries: The number of retries after the first failure.
    :param backoff: The delay in seconds before the first retry; doubled for each further retry.
    :raises: :class:`TransportError` If the last attempt failed as well.
    """
    attempt = 0
    while True:
        try:
            return await http.request(method, url, **kwargs)
        except TransportError as e:
            if attempt >= retries:
                raise
            delay = backoff * 2**attempt
            attempt += 1
            logger.warning(
                "%s %s failed (%s), retry %d/%d in %.1fs", method, url, e, attempt, retries, delay
            )
            await sleep(delay)
