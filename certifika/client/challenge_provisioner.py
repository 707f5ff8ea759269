import abc
import hashlib
import logging
import typing
from pathlib import Path

from pydantic_settings import BaseSettings

from certifika.client.encoding import b64encode
from certifika.client.exceptions import ProvisionError
from certifika.models import ChallengeType
from certifika.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


def dns01_txt_value(key_authorization: str) -> str:
    """Returns the TXT record value for a *dns-01* challenge.

    `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_

    :param key_authorization: The challenge's key authorization.
    :return: base64url(SHA-256(keyAuthorization))
    """
    return b64encode(hashlib.sha256(key_authorization.encode("ascii")).digest())


def dns01_record_name(identifier: str) -> str:
    """Returns the name of the TXT record that a *dns-01* challenge for the identifier is checked at."""
    if identifier.startswith("*."):
        identifier = identifier[2:]
    return f"_acme-challenge.{identifier}"


class ChallengeProvisioner(abc.ABC):
    """An abstract base class for challenge provisioners.

    A provisioner makes the key authorization of a challenge available where the server
    looks for it, e.g. as an HTTP resource or a DNS TXT record. It does not talk to the ACME
    server; signalling readiness and polling for validity is done by the
    :class:`~certifika.client.order.OrderEngine`.

    All implementations must implement the methods :meth:`provision` and :meth:`deprovision`
    and should be registered with the plugin registry via
    :meth:`~certifika.plugin_base.PluginRegistry.register_plugin`, so that configuration
    files can refer to them by name.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the provisioner implementation supports."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config = None):
        pass

    @abc.abstractmethod
    async def provision(
        self,
        challenge_type: ChallengeType,
        identifier: str,
        token: str,
        key_authorization: str,
    ) -> None:
        """Provision the given challenge.

        This method should make the key authorization available and then delay
        returning until the server is allowed to check for it.

        :param challenge_type: The type of the challenge.
        :param identifier: The identifier that is associated with the challenge.
        :param token: The challenge's token.
        :param key_authorization: The challenge's key authorization.
        :raises: :class:`~certifika.client.exceptions.ProvisionError`
            If the challenge could not be provisioned.
        """
        pass

    @abc.abstractmethod
    async def deprovision(
        self,
        challenge_type: ChallengeType,
        identifier: str,
        token: str,
    ) -> None:
        """Removes what was provisioned for the given challenge.

        Called once the challenge is finished, whether it became *valid* or not, and also if
        :meth:`provision` failed. It should silently return if there is nothing to clean up.

        :param challenge_type: The type of the challenge.
        :param identifier: The identifier that is associated with the challenge.
        :param token: The challenge's token.
        """
        pass


@PluginRegistry.register_plugin("dummy")
class DummyProvisioner(ChallengeProvisioner):
    """Dummy challenge provisioner that does not actually provision any challenges.

    Useful against test servers that do not validate challenges.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])
    """The types of challenges that the provisioner supports."""

    class Config(ChallengeProvisioner.Config):
        type: typing.Literal["dummy"] = "dummy"

    async def provision(self, challenge_type, identifier, token, key_authorization) -> None:
        logger.debug(
            "(not) provisioning challenge %s for %s, token %s", challenge_type.value, identifier, token
        )

    async def deprovision(self, challenge_type, identifier, token) -> None:
        logger.debug(
            "(not) deprovisioning challenge %s for %s, token %s", challenge_type.value, identifier, token
        )


@PluginRegistry.register_plugin("webroot")
class WebrootProvisioner(ChallengeProvisioner):
    """Provisions *http-01* challenges by writing the key authorization below a web server's document root.

    `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])
    """The types of challenges that the provisioner supports."""

    WELL_KNOWN = Path(".well-known") / "acme-challenge"

    class Config(ChallengeProvisioner.Config, env_prefix="CERTIFIKA_WEBROOT_"):
        type: typing.Literal["webroot"] = "webroot"
        path: Path
        """The web server's document root."""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._directory = Path(cfg.path) / self.WELL_KNOWN

    def _path(self, token: str) -> Path:
        # Tokens are base64url, anything else could escape the directory.
        if not token or "/" in token or token.startswith("."):
            raise ProvisionError(f"Refusing to provision suspicious token {token!r}")
        return self._directory / token

    async def provision(self, challenge_type, identifier, token, key_authorization) -> None:
        if challenge_type != ChallengeType.HTTP_01:
            raise ProvisionError(f"{type(self).__name__} cannot provision {challenge_type}")

        path = self._path(token)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            path.write_text(key_authorization)
        except OSError as e:
            raise ProvisionError(f"Could not write {path}: {e}") from e

        logger.info("Provisioned http-01 challenge for %s at %s", identifier, path)

    async def deprovision(self, challenge_type, identifier, token) -> None:
        path = self._path(token)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Removed http-01 challenge for %s at %s", identifier, path)
