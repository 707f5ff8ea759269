import logging
import typing

from cryptography import x509
from pydantic import Field
from pydantic_settings import BaseSettings

from certifika.client.account import AccountManager, ExternalAccountBindingCredentials
from certifika.client.challenge_provisioner import (
    ChallengeProvisioner,
    DummyProvisioner,
    WebrootProvisioner,
)
from certifika.client.directory import (
    Directory,
    DirectoryClient,
    LETSENCRYPT_STAGING_DIRECTORY_URL,
)
from certifika.client.exceptions import AccountStatusError, ConfigurationError, ProtocolError, stage
from certifika.client.http import AiohttpTransport, HttpTransport
from certifika.client.nonce import NoncePool
from certifika.client.order import IssuedCertificate, OrderEngine
from certifika.client.polling import Poller
from certifika.client.signer import Signer
from certifika.client.transport import AcmeTransport
from certifika.models import Account, ChallengeType, Identifier
from certifika.models.messages import RevocationReason
from certifika.plugin_base import PluginRegistry
from certifika.storage import CertificateStore, FileStore, VaultStore

logger = logging.getLogger(__name__)


class AcmeClient:
    """ACME compliant client.

    Wires the protocol components together from a :class:`AcmeClient.Config`. One client holds
    one account, one nonce pool and one cached directory; any number of :meth:`issue` calls may
    run concurrently on it.

    Usage::

        async with AcmeClient(cfg) as client:
            issued = await client.issue(["example.com"], csr)
    """

    class Config(BaseSettings, extra="forbid", env_prefix="CERTIFIKA_"):
        class EAB(BaseSettings, extra="forbid"):
            kid: str
            """The external account binding's key identifier."""
            hmac_key: str
            """The external account binding's base64url encoded symmetric key."""

        directory: str = LETSENCRYPT_STAGING_DIRECTORY_URL
        """
        The ACME server's directory URL.
        """
        private_key: str = ""
        """
        Path of the PEM encoded RSA or EC account key.
        """
        contact: list[str] = Field(default_factory=list)
        """
        Contact URIs sent on registration, e.g. mailto:admin@example.com
        """
        terms_agreed: bool = True
        """
        Agree to the CA's terms of service on registration.
        """
        challenge_preference: list[ChallengeType] = Field(
            default_factory=lambda: [ChallengeType.DNS_01, ChallengeType.HTTP_01]
        )
        """
        Challenge types in order of preference.
        """
        polling: Poller.Config = Field(default_factory=Poller.Config)
        nonce_retries: int = AcmeTransport.NONCE_RETRIES
        network_retries: int = AcmeTransport.NETWORK_RETRIES
        server_cert: typing.Optional[str] = None
        """
        Path of an additional CA certificate to trust, for test servers.
        """
        eab: typing.Optional[EAB] = None
        challenge_provisioner: DummyProvisioner.Config | WebrootProvisioner.Config = Field(
            default_factory=DummyProvisioner.Config, discriminator="type"
        )
        storage: typing.Optional[FileStore.Config | VaultStore.Config] = Field(default=None, discriminator="type")
        """
        Where to persist issued certificates and the account URL. Nothing is persisted if unset.
        """
        account_name: str = "default"
        """
        Name under which the account URL is stored.
        """

    def __init__(
        self,
        cfg: Config,
        *,
        http: typing.Optional[HttpTransport] = None,
        signer: typing.Optional[Signer] = None,
        provisioner: typing.Optional[ChallengeProvisioner] = None,
        store: typing.Optional[CertificateStore] = None,
        poller: typing.Optional[Poller] = None,
    ):
        """Creates an :class:`AcmeClient` instance.

        The keyword arguments replace the components that would otherwise be built from *cfg*.

        :param cfg: The client's configuration.
        :param http: The raw HTTP transport, an :class:`AiohttpTransport` by default.
        :param signer: The account key's signer, loaded from *cfg.private_key* by default.
        :param provisioner: The challenge provisioner, looked up by *cfg.challenge_provisioner.type* by default.
        :param store: The certificate store, looked up by *cfg.storage.type* by default.
        :raises: :class:`ConfigurationError` If no account key is available.
        """
        self.cfg = cfg

        if signer is None:
            if not cfg.private_key:
                raise ConfigurationError("No account key configured")
            signer = Signer.from_file(cfg.private_key)

        if provisioner is None:
            provisioner_cls = PluginRegistry.get_registry(ChallengeProvisioner).get_plugin(
                cfg.challenge_provisioner.type
            )
            provisioner = provisioner_cls(cfg.challenge_provisioner)

        if store is None and cfg.storage is not None:
            store_cls = PluginRegistry.get_registry(CertificateStore).get_plugin(cfg.storage.type)
            store = store_cls(cfg.storage)

        self._owns_http = http is None
        self._http = http if http is not None else AiohttpTransport(server_cert=cfg.server_cert)
        self._store = store
        self._eab = ExternalAccountBindingCredentials(cfg.eab.kid, cfg.eab.hmac_key) if cfg.eab else None

        self._directory = DirectoryClient(cfg.directory, self._http, retries=cfg.network_retries)
        self._transport = AcmeTransport(
            self._http,
            self._directory,
            signer,
            NoncePool(),
            nonce_retries=cfg.nonce_retries,
            network_retries=cfg.network_retries,
        )
        self._accounts = AccountManager(self._transport, self._directory)
        self._orders = OrderEngine(
            self._transport,
            self._accounts,
            provisioner,
            challenge_preference=cfg.challenge_preference,
            poller=poller or Poller(cfg.polling),
            store=store,
        )

    async def __aenter__(self) -> "AcmeClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def account(self) -> typing.Optional[Account]:
        return self._accounts.account

    @property
    def signer(self) -> Signer:
        return self._transport.signer

    async def directory(self) -> Directory:
        return await self._directory.get()

    async def start(self) -> Account:
        """Fetches the directory and registers the account key with the server.

        If the store holds an account URL that the server accepts for the key, that account is
        used without registering. Otherwise registration is idempotent: if an account for the
        key exists already, it is used. The account URL is persisted in the store, if one is
        configured.

        :raises: Exceptions tagged with the stage *account*.
        :return: The account.
        """
        with stage("account"):
            await self._directory.get()

            known = None
            if self._store is not None:
                known = await self._store.load_account_url(self.cfg.account_name)
                logger.debug("Stored account URL for %s: %s", self.cfg.account_name, known)

            if known:
                try:
                    return await self._accounts.resume(known)
                except (ProtocolError, AccountStatusError) as e:
                    logger.warning("Stored account %s is unusable (%s), registering the key", known, e)

            account = await self._accounts.ensure_account(
                self.cfg.contact, terms_agreed=self.cfg.terms_agreed, eab=self._eab
            )

            if self._store is not None:
                if known and known != account.kid:
                    logger.warning(
                        "Account URL %s differs from the stored %s, replacing it", account.kid, known
                    )
                await self._store.store_account_url(self.cfg.account_name, account.kid)

        return account

    async def close(self):
        """Closes the client's HTTP session, if the client created it."""
        if self._owns_http:
            await self._http.close()

    async def issue(
        self,
        identifiers: typing.Sequence[typing.Union[str, Identifier]],
        csr: x509.CertificateSigningRequest,
    ) -> IssuedCertificate:
        """Obtains a certificate, see :meth:`~certifika.client.order.OrderEngine.issue`."""
        return await self._orders.issue(identifiers, csr)

    async def revoke(
        self,
        certificate: x509.Certificate,
        reason: typing.Optional[RevocationReason] = None,
    ) -> bool:
        """Revokes a certificate, see :meth:`~certifika.client.order.OrderEngine.certificate_revoke`."""
        return await self._orders.certificate_revoke(certificate, reason)

    async def key_change(self, new_key: typing.Union[str, Signer]) -> None:
        """Rolls the account over to a new key.

        :param new_key: Path of the new PEM encoded key, or its signer.
        """
        signer = new_key if isinstance(new_key, Signer) else Signer.from_file(new_key)
        await self._accounts.key_change(signer)

    async def account_lookup(self) -> Account:
        return await self._accounts.lookup()

    async def account_update(self, contacts: typing.Sequence[str]) -> Account:
        return await self._accounts.update(contacts)

    async def account_deactivate(self) -> Account:
        return await self._accounts.deactivate()

    @property
    def orders(self) -> OrderEngine:
        """The order engine, for driving the individual steps of an issuance by hand."""
        return self._orders
