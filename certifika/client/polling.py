import asyncio
import logging
import random
import time
import typing

from pydantic_settings import BaseSettings

from certifika.client.exceptions import PollTimeout

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


class Poller:
    """Polls a server-side resource until it reaches a terminal status.

    The delay between attempts grows exponentially from :attr:`Config.interval` up to
    :attr:`Config.max_interval` with random jitter. A *Retry-After* hint from the server
    replaces the computed delay. Each poll is bounded by both a maximum number of attempts
    and a wall-clock budget; exceeding either raises :class:`PollTimeout`.
    """

    class Config(BaseSettings, extra="forbid", env_prefix="CERTIFIKA_POLL_"):
        interval: float = 1.0
        """Delay in seconds after the first unsuccessful attempt."""
        max_interval: float = 30.0
        """Upper bound of the computed delay."""
        jitter: float = 0.1
        """Relative random deviation applied to the computed delay."""
        max_attempts: int = 30
        """Maximum number of requests per poll."""
        timeout: float = 300.0
        """Maximum number of seconds per poll."""

    def __init__(self, cfg: Config = None, *, sleep=asyncio.sleep, clock=time.monotonic):
        self.cfg = cfg or Poller.Config()
        self._sleep = sleep
        self._clock = clock

    def delay(self, attempt: int, retry_after: typing.Optional[float] = None) -> float:
        """Returns the delay before the next attempt.

        :param attempt: The number of attempts made so far, starting at 1.
        :param retry_after: The server's *Retry-After* hint in seconds, if any.
        """
        if retry_after is not None:
            return max(0.0, retry_after)

        delay = min(self.cfg.max_interval, self.cfg.interval * 2 ** (attempt - 1))
        if self.cfg.jitter:
            delay *= 1 + random.uniform(-self.cfg.jitter, self.cfg.jitter)
        return max(0.0, delay)

    async def poll(
        self,
        fetch: typing.Callable[[], typing.Awaitable[typing.Tuple[T, typing.Optional[float]]]],
        until: typing.Callable[[T], bool],
        url: str = "",
    ) -> T:
        """Calls *fetch* until *until* holds for its result.

        :param fetch: Coroutine function returning the resource and the *Retry-After* hint.
        :param until: Predicate that is true once the resource reached a terminal status.
        :param url: The polled URL, used in log messages and errors.
        :raises: :class:`PollTimeout` If the attempts or the time budget are exhausted.
        :return: The resource in its terminal status.
        """
        start = self._clock()
        deadline = start + self.cfg.timeout
        attempt = 0
        resource = None

        while attempt < self.cfg.max_attempts:
            resource, retry_after = await fetch()
            attempt += 1

            status = getattr(resource, "status", None)
            if until(resource):
                logger.debug("Polled %s: %s after %d attempts", url, status, attempt)
                return resource

            if attempt >= self.cfg.max_attempts:
                break

            delay = self.delay(attempt, retry_after)
            if self._clock() + delay > deadline:
                logger.debug(
                    "Polling %s: next attempt in %.1fs would exceed the budget", url, delay
                )
                break

            logger.debug(
                "Polling %s: status %s, attempt %d/%d, next in %.1fs",
                url,
                status,
                attempt,
                self.cfg.max_attempts,
                delay,
            )
            await self._sleep(delay)

        status = getattr(resource, "status", None)
        raise PollTimeout(url, attempt, self._clock() - start, getattr(status, "value", status))
