import asyncio
import collections
import logging
import typing

logger = logging.getLogger(__name__)

NonceFetcher = typing.Callable[[], typing.Awaitable[str]]


class NoncePool:
    """Cache of unused replay nonces.

    `6.5. Replay Protection <https://tools.ietf.org/html/rfc8555#section-6.5>`_

    Every signed request consumes exactly one nonce taken from the pool. Nonces observed in
    response headers, including those of error responses, are put back into the pool.
    A nonce is handed out at most once: nonces that were already handed out are not
    accepted again, and a consumed nonce never returns to the pool.
    """

    SEEN_LIMIT = 4096
    """The number of handed out nonces that are remembered to reject duplicates."""

    def __init__(self, fetch: typing.Optional[NonceFetcher] = None):
        """Creates a :class:`NoncePool` instance.

        :param fetch: Coroutine function that obtains a fresh nonce from the server, usually a
            *HEAD* request to the directory's *newNonce* resource.
        """
        self.fetch = fetch
        self._nonces: typing.Deque[str] = collections.deque()
        self._seen: typing.OrderedDict[str, None] = collections.OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._nonces)

    def _remember(self, nonce: str) -> None:
        self._seen[nonce] = None
        while len(self._seen) > self.SEEN_LIMIT:
            self._seen.popitem(last=False)

    async def take(self) -> str:
        """Returns an unused nonce.

        A cached nonce is returned if available. Otherwise a fresh one is fetched from the
        server; the lock is not held while fetching.

        :raises: :class:`ValueError` If the pool is empty and no fetcher was configured.
        :return: The nonce.
        """
        async with self._lock:
            if self._nonces:
                nonce = self._nonces.popleft()
                logger.debug("Took cached nonce %s, %d remaining", nonce, len(self._nonces))
                return nonce

        if self.fetch is None:
            raise ValueError("The nonce pool is empty and cannot fetch new nonces")

        nonce = await self.fetch()
        async with self._lock:
            self._remember(nonce)
        logger.debug("Fetched new nonce %s", nonce)
        return nonce

    async def put(self, nonce: typing.Optional[str]) -> None:
        """Stores a nonce observed in a response header.

        Empty values and nonces that have been seen before are ignored.
        """
        if not nonce:
            return

        async with self._lock:
            if nonce in self._seen:
                logger.debug("Ignoring already seen nonce %s", nonce)
                return
            self._remember(nonce)
            self._nonces.append(nonce)
