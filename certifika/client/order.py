import asyncio
import functools
import logging
import typing
from dataclasses import dataclass, field

from cryptography import x509

from certifika.client.account import AccountManager
from certifika.client.challenge_provisioner import ChallengeProvisioner
from certifika.client.exceptions import (
    AcmeClientException,
    AuthorizationsFailed,
    CertificateError,
    CSRMismatch,
    NoSupportedChallenge,
    ProtocolError,
    SigningError,
    StateError,
    stage,
)
from certifika.client.polling import Poller
from certifika.client.transport import AcmeTransport, PEM_CHAIN_CONTENT_TYPE
from certifika.models import (
    Authorization,
    AuthorizationStatus,
    Challenge,
    ChallengeStatus,
    ChallengeType,
    Identifier,
    Order,
    OrderStatus,
)
from certifika.models.messages import (
    CertificateRequest,
    NewOrder,
    Revocation,
    RevocationReason,
)
from certifika.storage import CertificateStore
from certifika.util import names_of, pem_split, PEM_CERTIFICATE_HEADER

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_PREFERENCE = (ChallengeType.DNS_01, ChallengeType.HTTP_01)


@dataclass
class IssuedCertificate:
    """The result of a successful issuance."""

    order: Order
    """The order in its final *valid* state."""
    pem: str
    """The PEM encoded certificate chain, leaf first."""
    certificates: typing.List[x509.Certificate] = field(default_factory=list)
    """The parsed certificates of the chain."""
    alternates: typing.List[str] = field(default_factory=list)
    """URLs of alternate chains offered by the server via *Link: rel="alternate"*."""

    @property
    def leaf(self) -> x509.Certificate:
        return self.certificates[0]


def _problem_detail(problem, default: str) -> str:
    if problem is None:
        return default
    return problem.detail or problem.typ or default


class OrderEngine:
    """Drives certificate orders through their state machine.

    `7.4. Applying for Certificate Issuance <https://tools.ietf.org/html/rfc8555#section-7.4>`_

    :meth:`issue` creates an order, completes one challenge per pending authorization using the
    :class:`~certifika.client.challenge_provisioner.ChallengeProvisioner`, finalizes the order
    with the CSR and downloads the certificate chain. Server-side state changes are observed by
    polling with the :class:`~certifika.client.polling.Poller`.
    """

    def __init__(
        self,
        transport: AcmeTransport,
        account_manager: AccountManager,
        provisioner: ChallengeProvisioner,
        *,
        challenge_preference: typing.Iterable[typing.Union[str, ChallengeType]] = DEFAULT_CHALLENGE_PREFERENCE,
        poller: typing.Optional[Poller] = None,
        store: typing.Optional[CertificateStore] = None,
    ):
        self._transport = transport
        self._account_manager = account_manager
        self._provisioner = provisioner
        self.challenge_preference = [ChallengeType(typ) for typ in challenge_preference]
        self._poller = poller or Poller()
        self._store = store

    @property
    def _kid(self) -> str:
        if (kid := self._account_manager.kid) is None:
            raise SigningError("There is no account yet, register or look it up first")
        return kid

    async def issue(
        self,
        identifiers: typing.Sequence[typing.Union[str, Identifier]],
        csr: x509.CertificateSigningRequest,
    ) -> IssuedCertificate:
        """Obtains a certificate for the given identifiers.

        Exceptions that escape this method are tagged with the failing
        :attr:`~certifika.client.exceptions.AcmeClientException.stage` and, for authorizations,
        the :attr:`~certifika.client.exceptions.AcmeClientException.identifier`.

        :param identifiers: The DNS names to request the certificate for.
        :param csr: The CSR whose names must exactly match the identifiers.
        :raises:

            * :class:`CSRMismatch` If the CSR's names do not match the identifiers.
            * :class:`StateError` If an authorization or the order became *invalid*.
            * :class:`AuthorizationsFailed` If several authorizations failed.
            * :class:`PollTimeout` If the server did not finish in time.
            * :class:`ProtocolError` If the server rejected a request.
            * :class:`CertificateError` If the downloaded chain is malformed.

        :return: The issued certificate.
        """
        with stage("account"):
            kid = self._kid

        with stage("order"):
            requested = [str(identifier) for identifier in identifiers]
            self._check_csr(csr, requested)
            order = await self.order_create(identifiers)
            logger.info("Created order %s for %s", order.url, ", ".join(requested))

        await self.authorizations_complete(order)

        with stage("order"):
            order = await self._poller.poll(
                functools.partial(self._fetch_order, order.url),
                until=lambda o: o.status not in (OrderStatus.PENDING, OrderStatus.PROCESSING),
                url=order.url,
            )
            self._raise_if_invalid(order)

        with stage("finalize"):
            if order.status == OrderStatus.READY:
                order = await self.order_finalize(order, csr)
            else:
                logger.debug("Order %s is already %s", order.url, order.status.value)

        with stage("download"):
            issued = await self.certificate_get(order)

        logger.info("Issued certificate for %s (order %s, account %s)", ", ".join(requested), order.url, kid)

        if self._store is not None:
            await self._store.store(issued.pem, requested)

        return issued

    def _check_csr(self, csr: x509.CertificateSigningRequest, identifiers: typing.Iterable[str]) -> None:
        csr_names = names_of(csr, lower=True)
        expected = {identifier.lower() for identifier in identifiers}
        if csr_names != expected:
            raise CSRMismatch(csr_names, expected)

    @staticmethod
    def _raise_if_invalid(order: Order) -> None:
        if order.status == OrderStatus.INVALID:
            raise StateError(
                None,
                _problem_detail(order.error, f"Order {order.url} is invalid"),
                problem=order.error,
            )

    async def order_create(self, identifiers: typing.Sequence[typing.Union[str, Identifier]]) -> Order:
        """Creates a new order with the given identifiers.

        :param identifiers: The identifiers, either DNS names or :class:`~certifika.models.Identifier`.
        :raises: :class:`ProtocolError` If the server is unwilling to create the order, e.g.
            *rateLimited* with :attr:`~ProtocolError.retry_after` set.
        :return: The new order.
        """
        new_order = NewOrder.from_data(identifiers)
        resp = await self._transport.post("newOrder", new_order, kid=self._kid)
        if not resp.location:
            raise ProtocolError(None, "The server did not return the order URL", status=resp.status)
        return resp.resource(Order, resp.location)

    async def _fetch_order(self, order_url: str) -> typing.Tuple[Order, typing.Optional[float]]:
        resp = await self._transport.post_as_get(order_url, self._kid)
        return resp.resource(Order, order_url), resp.retry_after

    async def order_get(self, order_url: str) -> Order:
        """Fetches an order given its URL."""
        order, _ = await self._fetch_order(order_url)
        return order

    async def _fetch_authorization(
        self, authorization_url: str
    ) -> typing.Tuple[Authorization, typing.Optional[float]]:
        resp = await self._transport.post_as_get(authorization_url, self._kid)
        return resp.resource(Authorization, authorization_url), resp.retry_after

    async def authorization_get(self, authorization_url: str) -> Authorization:
        """Fetches an authorization given its URL."""
        authorization, _ = await self._fetch_authorization(authorization_url)
        return authorization

    async def authorizations_complete(self, order: Order) -> None:
        """Completes all authorizations of the given order concurrently.

        All authorizations are driven to a terminal state (and their challenges deprovisioned)
        before any failure is raised.

        :param order: Order whose authorizations should be completed.
        :raises:

            * The exception of the failed authorization if exactly one failed.
            * :class:`AuthorizationsFailed` listing every failure if several did.

        """
        results = await asyncio.gather(
            *[self.authorization_complete(url) for url in order.authorizations],
            return_exceptions=True,
        )
        failures = []
        for result in results:
            if isinstance(result, AcmeClientException):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result

        if len(failures) == 1:
            raise failures[0]
        if failures:
            raise AuthorizationsFailed(failures)

    def select_challenge(self, authorization: Authorization) -> Challenge:
        """Selects the challenge to respond to.

        The first type in :attr:`challenge_preference` that is both offered by the server and
        supported by the provisioner wins.

        :raises: :class:`NoSupportedChallenge` If there is no such type.
        """
        offered = {}
        for challenge in authorization.challenges:
            offered.setdefault(challenge.typ, challenge)

        supported = {typ.value for typ in self._provisioner.SUPPORTED_CHALLENGES}
        for typ in self.challenge_preference:
            if typ.value in offered and typ.value in supported:
                return offered[typ.value]

        raise NoSupportedChallenge(
            authorization.name,
            f"The server offered {', '.join(offered) or 'no challenges'}, "
            f"but only {', '.join(typ.value for typ in self.challenge_preference if typ.value in supported)} "
            f"can be completed",
        )

    async def authorization_complete(self, authorization_url: str) -> Authorization:
        """Completes a single authorization.

        :param authorization_url: The authorization's URL.
        :raises:

            * :class:`StateError` If the authorization is or becomes anything but *valid*.
            * :class:`NoSupportedChallenge` If no offered challenge can be completed.
            * :class:`ProvisionError` If the provisioner failed.

        :return: The *valid* authorization.
        """
        with stage("authorization"):
            authorization = await self.authorization_get(authorization_url)

        with stage("authorization", authorization.name):
            if authorization.status == AuthorizationStatus.VALID:
                logger.debug("Authorization for %s is already valid", authorization.name)
                return authorization

            if authorization.status != AuthorizationStatus.PENDING:
                raise StateError(
                    authorization.name,
                    f"Authorization is {authorization.status.value}",
                )

            challenge = self.select_challenge(authorization)
            logger.debug("Selected %s challenge for %s", challenge.typ, authorization.name)

            authorization = await self._challenge_complete(authorization, challenge)

            if authorization.status != AuthorizationStatus.VALID:
                try:
                    error = authorization.challenge_by_url(challenge.url).error
                except KeyError:
                    error = None
                raise StateError(
                    authorization.name,
                    _problem_detail(error, f"Authorization is {authorization.status.value}"),
                    problem=error,
                )

            logger.info("Authorization for %s is valid", authorization.name)
            return authorization

    async def _challenge_complete(self, authorization: Authorization, challenge: Challenge) -> Authorization:
        challenge_type = ChallengeType(challenge.typ)
        name = authorization.name

        if challenge.status != ChallengeStatus.PENDING:
            logger.debug("Challenge %s is already %s", challenge.url, challenge.status.value)
            return await self._poll_authorization(authorization.url)

        key_authorization = self._transport.signer.key_authorization(challenge.token)
        try:
            await self._provisioner.provision(challenge_type, name, challenge.token, key_authorization)
            await self.challenge_validate(challenge.url)
            return await self._poll_authorization(authorization.url)
        finally:
            try:
                await self._provisioner.deprovision(challenge_type, name, challenge.token)
            except Exception as e:
                logger.warning("Could not deprovision %s challenge for %s: %s", challenge_type.value, name, e)

    async def _poll_authorization(self, authorization_url: str) -> Authorization:
        return await self._poller.poll(
            functools.partial(self._fetch_authorization, authorization_url),
            until=lambda a: a.status != AuthorizationStatus.PENDING,
            url=authorization_url,
        )

    async def challenge_validate(self, challenge_url: str) -> None:
        """Tells the server that the challenge is ready for validation.

        `7.5.1. Responding to Challenges <https://tools.ietf.org/html/rfc8555#section-7.5.1>`_

        :param challenge_url: The challenge's URL.
        """
        await self._transport.post(challenge_url, {}, kid=self._kid)

    async def order_finalize(self, order: Order, csr: x509.CertificateSigningRequest) -> Order:
        """Finalizes the order using the given CSR and waits for it to become *valid*.

        :param order: The *ready* order.
        :param csr: The CSR, whose names must match the order's identifiers.
        :raises:

            * :class:`CSRMismatch` If the CSR's names differ from the order's identifiers.
            * :class:`StateError` If the order became *invalid*.
            * :class:`ProtocolError` If the server rejected the CSR.

        :return: The *valid* order.
        """
        csr_names = names_of(csr, lower=True)
        if csr_names != order.names:
            raise CSRMismatch(csr_names, order.names)

        resp = await self._transport.post(order.finalize, CertificateRequest(csr=csr), kid=self._kid)
        finalized = resp.resource(Order, resp.location or order.url)
        logger.debug("Finalized order %s: %s", finalized.url, finalized.status.value)

        if finalized.status not in (OrderStatus.VALID, OrderStatus.INVALID):
            finalized = await self._poller.poll(
                functools.partial(self._fetch_order, finalized.url),
                until=lambda o: o.status in (OrderStatus.VALID, OrderStatus.INVALID),
                url=finalized.url,
            )

        self._raise_if_invalid(finalized)
        return finalized

    async def certificate_get(self, order: Order) -> IssuedCertificate:
        """Downloads the given order's certificate chain.

        :param order: The *valid* order.
        :raises: :class:`CertificateError` If the order has no certificate yet or the downloaded
            data is not a PEM encoded certificate chain.
        :return: The issued certificate.
        """
        if not order.certificate:
            raise CertificateError(f"Order {order.url} has not been finalized")

        resp = await self._transport.post_as_get(
            order.certificate, self._kid, headers={"Accept": PEM_CHAIN_CONTENT_TYPE}
        )
        pem = resp.data
        if not isinstance(pem, str) or not pem.lstrip().startswith(PEM_CERTIFICATE_HEADER):
            raise CertificateError(f"{order.certificate} did not return a PEM certificate chain")

        try:
            certificates = pem_split(pem)
        except ValueError as e:
            raise CertificateError(f"Could not parse the certificate chain: {e}") from e

        if not certificates or not all(isinstance(c, x509.Certificate) for c in certificates):
            raise CertificateError(f"{order.certificate} did not return a PEM certificate chain")

        return IssuedCertificate(
            order=order,
            pem=pem,
            certificates=certificates,
            alternates=resp.links.get("alternate", []),
        )

    async def certificate_revoke(
        self,
        certificate: x509.Certificate,
        reason: typing.Optional[RevocationReason] = None,
    ) -> bool:
        """Revokes the given certificate.

        `7.6. Certificate Revocation <https://tools.ietf.org/html/rfc8555#section-7.6>`_

        :param certificate: The certificate to revoke.
        :param reason: Optional reason for revocation.
        :raises: :class:`ProtocolError` If the revocation did not succeed, e.g. *alreadyRevoked*.
        :return: *True* if the revocation succeeded.
        """
        revocation = Revocation(certificate=certificate, reason=reason)
        resp = await self._transport.post("revokeCert", revocation, kid=self._kid)
        logger.info("Revoked certificate %x", certificate.serial_number)
        return resp.status == 200
