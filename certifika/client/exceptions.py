import contextlib
import typing

import acme.messages


class AcmeClientException(Exception):
    """General ACME client exception.

    Exceptions that escape an issuance attempt are tagged with the :attr:`stage` that failed
    and, for authorizations, the :attr:`identifier` concerned.
    """

    stage: typing.Optional[str] = None
    """The issuance stage that failed: *account*, *order*, *authorization*, *finalize* or *download*."""
    identifier: typing.Optional[str] = None
    """The identifier whose authorization failed, if any."""


class EncodingError(AcmeClientException, ValueError):
    """Raised on malformed base64url or JSON data. Never retried."""

    pass


MalformedEncoding = EncodingError


class SigningError(AcmeClientException):
    """Raised if the account key and the requested JWS algorithm or identity do not match. Never retried."""

    pass


class TransportError(AcmeClientException):
    """Raised if the server could not be reached after exhausting the network retries."""

    pass


class ProtocolError(AcmeClientException):
    """Exception that is raised if the server answered with an error.

    For `problem documents <https://tools.ietf.org/html/rfc8555#section-6.7>`_ the parsed
    :class:`acme.messages.Error` is available as :attr:`problem`.
    """

    def __init__(
        self,
        urn: typing.Optional[str],
        detail: str = "",
        *,
        status: typing.Optional[int] = None,
        retry_after: typing.Optional[float] = None,
        problem: typing.Optional[acme.messages.Error] = None,
        document: typing.Optional[dict] = None,
    ):
        super().__init__(urn, detail)
        self.urn = urn
        """The problem type, e.g. *urn:ietf:params:acme:error:badNonce*."""
        self.detail = detail
        self.status = status
        """The HTTP status code of the response."""
        self.retry_after = retry_after
        """Seconds to wait before retrying as indicated by the *Retry-After* header."""
        self.problem = problem
        self.document = document or {}

    @property
    def code(self) -> typing.Optional[str]:
        """The problem type without the ACME error namespace, e.g. *badNonce*."""
        if self.urn and self.urn.startswith(acme.messages.ERROR_PREFIX):
            return self.urn[len(acme.messages.ERROR_PREFIX) :]
        return None

    @property
    def subproblems(self) -> typing.List[dict]:
        return list(self.document.get("subproblems", []))

    def __str__(self):
        parts = [self.urn or (f"HTTP {self.status}" if self.status else ""), self.detail]
        if self.retry_after is not None:
            parts.append(f"retry after {self.retry_after:.0f}s")
        return " :: ".join(part for part in parts if part)


class StateError(AcmeClientException):
    """Raised if an authorization or an order reached a failing terminal state."""

    def __init__(self, identifier: typing.Optional[str], detail: str, problem=None):
        super().__init__(identifier, detail)
        self.identifier = identifier
        self.detail = detail
        self.problem = problem

    def __str__(self):
        if self.identifier:
            return f"{self.identifier}: {self.detail}"
        return self.detail


class NoSupportedChallenge(StateError):
    """Raised if the server offers no challenge type that is both preferred and provisionable."""

    pass


class AuthorizationsFailed(AcmeClientException):
    """Raised if more than one authorization of an order failed.

    Each failure keeps its own type and :attr:`identifier`, they are available in :attr:`failures`.
    """

    def __init__(self, failures: typing.Sequence[AcmeClientException]):
        super().__init__(failures)
        self.failures = list(failures)
        self.stage = "authorization"

    def __str__(self):
        parts = []
        for failure in self.failures:
            text = str(failure)
            if failure.identifier and not text.startswith(failure.identifier):
                text = f"{failure.identifier}: {text}"
            parts.append(text)
        return f"{len(self.failures)} authorizations failed: " + "; ".join(parts)


class PollTimeout(AcmeClientException):
    """Raised if a resource did not reach a terminal state within the polling budget.

    Distinct from :class:`StateError`: the resource may still become valid later.
    """

    def __init__(self, url: str, attempts: int, elapsed: float, last_status=None):
        super().__init__(url, attempts, elapsed)
        self.url = url
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_status = last_status

    def __str__(self):
        return (
            f"Polling {self.url} timed out after {self.attempts} attempts "
            f"({self.elapsed:.1f}s), last status: {self.last_status}"
        )


Timeout = PollTimeout


class ProvisionError(AcmeClientException):
    """Raised by a challenge provisioner if the challenge could not be provisioned."""

    pass


class CSRMismatch(AcmeClientException, ValueError):
    """Raised if the names in a CSR do not exactly match the order's identifiers."""

    def __init__(self, csr_names: typing.Iterable[str], identifiers: typing.Iterable[str]):
        self.csr_names = sorted(csr_names)
        self.identifiers = sorted(identifiers)
        super().__init__(
            f"CSR names {', '.join(self.csr_names)} do not match the order identifiers "
            f"{', '.join(self.identifiers)}"
        )


class CertificateError(AcmeClientException):
    """Raised if the downloaded certificate chain is not a PEM encoded chain of certificates."""

    pass


class AccountStatusError(AcmeClientException):
    """Raised if the account's status is not *valid* after registration."""

    def __init__(self, account):
        super().__init__(account.kid, account.status)
        self.account = account

    def __str__(self):
        return f"Account {self.account.kid} has status {self.account.status.value}"


class ConfigurationError(AcmeClientException):
    """Raised if the client's configuration cannot be used with the server."""

    pass


@contextlib.contextmanager
def stage(name: str, identifier: typing.Optional[str] = None):
    """Tags client exceptions raised inside the block with the issuance stage.

    The innermost stage wins, so an authorization failure keeps its identifier
    when it propagates through the enclosing order stage.
    """
    try:
        yield
    except AcmeClientException as e:
        if e.stage is None:
            e.stage = name
            if identifier is not None and e.identifier is None:
                e.identifier = identifier
        raise
