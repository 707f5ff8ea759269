import logging
import typing
from dataclasses import dataclass

import acme.messages
import josepy

from certifika.client.directory import DirectoryClient
from certifika.client.exceptions import (
    AccountStatusError,
    ConfigurationError,
    ProtocolError,
    SigningError,
)
from certifika.client.signer import Signer
from certifika.client.transport import AcmeTransport, AcmeResponse
from certifika.models import Account, AccountStatus
from certifika.models.messages import KeyChange

logger = logging.getLogger(__name__)


@dataclass
class ExternalAccountBindingCredentials:
    """Stores external account binding credentials to later create a binding JWS using
    :class:`~acme.messages.ExternalAccountBinding`.
    """

    kid: str
    """The external account binding's key identifier"""
    hmac_key: str
    """The external account binding's symmetric encryption key"""

    def create_eab(self, public_key: josepy.jwk.JWK, directory) -> dict:
        """Creates an external account binding from the stored credentials.

        `7.3.4. External Account Binding <https://tools.ietf.org/html/rfc8555#section-7.3.4>`_

        :param public_key: The account's public key
        :param directory: The ACME server's directory
        :return: The JWS representing the external account binding
        """
        if self.kid and self.hmac_key:
            return acme.messages.ExternalAccountBinding.from_data(
                public_key, self.kid, self.hmac_key, directory
            )
        else:
            raise ValueError("Must specify both kid and hmac_key")


class AccountManager:
    """Registers or looks up the ACME account of the transport's key.

    Requests are signed with the public key (*jwk*) until the account URL is known; from then
    on the account URL is used as *kid*.
    """

    def __init__(self, transport: AcmeTransport, directory: DirectoryClient):
        self._transport = transport
        self._directory = directory
        self._account: typing.Optional[Account] = None

    @property
    def account(self) -> typing.Optional[Account]:
        return self._account

    @property
    def kid(self) -> typing.Optional[str]:
        """The account URL, *None* until the account is registered or looked up."""
        return self._account.kid if self._account else None

    def _account_from(self, resp: AcmeResponse, url: str) -> Account:
        if not url:
            raise ProtocolError(None, "The server did not return the account URL", status=resp.status)
        return resp.resource(Account, url)

    async def ensure_account(
        self,
        contacts: typing.Sequence[str] = (),
        terms_agreed: bool = True,
        eab: typing.Optional[ExternalAccountBindingCredentials] = None,
    ) -> Account:
        """Registers an account for the key, or finds the existing one.

        `7.3. Account Management <https://tools.ietf.org/html/rfc8555#section-7.3>`_

        The server answers *201 Created* for a new account and *200 OK* if an account for the
        key exists already, both with the account URL in the *Location* header.

        :param contacts: Contact URIs, e.g. *mailto:admin@example.com*.
        :param terms_agreed: Whether the operator agrees to the terms of service.
        :param eab: External account binding credentials, required by some CAs.
        :raises:

            * :class:`ConfigurationError` If the CA requires an external account binding but none was given.
            * :class:`ProtocolError` If the server rejects the registration.
            * :class:`AccountStatusError` If the account is not *valid*.

        :return: The account.
        """
        directory = await self._directory.get()

        external_account_binding = None
        if eab is not None:
            external_account_binding = eab.create_eab(
                self._transport.signer.public_jwk, directory
            )
        elif directory.meta.external_account_required:
            raise ConfigurationError(
                f"The CA at {directory.url} requires an external account binding"
            )

        reg = acme.messages.Registration(
            contact=tuple(contacts),
            terms_of_service_agreed=terms_agreed,
            external_account_binding=external_account_binding,
        )

        resp = await self._transport.post("newAccount", reg, kid=None)
        account = self._account_from(resp, resp.location)

        if resp.status == 201:
            logger.info("Registered account %s", account.kid)
        else:
            logger.info("Found existing account %s", account.kid)

        self._account = account

        if account.status != AccountStatus.VALID:
            raise AccountStatusError(account)

        return account

    async def lookup(self) -> Account:
        """Looks up the account of the key without creating one.

        :raises: :class:`ProtocolError` *accountDoesNotExist* if there is no account for the key.
        :return: The account.
        """
        reg = acme.messages.Registration(only_return_existing=True)
        resp = await self._transport.post("newAccount", reg, kid=None)
        self._account = self._account_from(resp, resp.location)
        return self._account

    async def resume(self, url: str) -> Account:
        """Continues with a known account URL, e.g. one persisted by an earlier run.

        The account is fetched with a POST-as-GET signed with *url* as *kid*, which only
        succeeds if the account belongs to the transport's key.

        :param url: The account URL.
        :raises:

            * :class:`ProtocolError` If the server does not accept the URL for this key.
            * :class:`AccountStatusError` If the account is not *valid*.

        :return: The account.
        """
        resp = await self._transport.post_as_get(url, url)
        account = self._account_from(resp, url)

        if account.status != AccountStatus.VALID:
            raise AccountStatusError(account)

        self._account = account
        logger.info("Resumed account %s", url)
        return account

    def _require_kid(self) -> str:
        if self.kid is None:
            raise SigningError("There is no account yet, register or look it up first")
        return self.kid

    async def update(self, contacts: typing.Sequence[str]) -> Account:
        """Replaces the account's contact URIs."""
        kid = self._require_kid()
        reg = acme.messages.Registration(contact=tuple(contacts))
        resp = await self._transport.post(kid, reg, kid=kid)
        self._account = self._account_from(resp, kid)
        return self._account

    async def deactivate(self) -> Account:
        """Deactivates the account. The server will not accept requests for it afterwards.

        `7.3.6. Account Deactivation <https://tools.ietf.org/html/rfc8555#section-7.3.6>`_
        """
        kid = self._require_kid()
        resp = await self._transport.post(kid, {"status": AccountStatus.DEACTIVATED.value}, kid=kid)
        self._account = self._account_from(resp, kid)
        logger.info("Deactivated account %s", kid)
        return self._account

    async def key_change(self, new_signer: Signer) -> None:
        """Rolls the account over to a new key.

        `7.3.5. Account Key Rollover <https://tools.ietf.org/html/rfc8555#section-7.3.5>`_

        The inner JWS is signed with the new key and carries it as *jwk*; the outer JWS is a
        regular request signed with the old key. Subsequent requests are signed with the new key.

        :param new_signer: Signer of the new key.
        """
        kid = self._require_kid()
        url = await self._directory.url_for("keyChange")

        inner = new_signer.sign(
            new_signer.protected_header(None, url),
            KeyChange(account=kid, old_key=self._transport.signer.public_jwk),
        )
        await self._transport.post(url, inner, kid=kid)

        self._transport.signer = new_signer
        logger.info("Changed the key of account %s", kid)
