import abc
import asyncio
import functools
import logging
import os
import typing
from pathlib import Path

import hvac
import hvac.exceptions
from pydantic_settings import BaseSettings

from certifika.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

CERT_FILE_MODE = 0o644
ACCOUNT_FILE_MODE = 0o600


def _certificate_name(identifiers: typing.Sequence[str]) -> str:
    # Wildcards are stored next to their base name.
    return identifiers[0].replace("*", "_")


class CertificateStore(abc.ABC):
    """An abstract base class for storage backends.

    The store receives the issued certificate chain and keeps the account URL between runs.
    """

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config = None):
        pass

    @abc.abstractmethod
    async def store(self, certificate_chain_pem: str, identifiers: typing.Sequence[str]) -> None:
        """Persists an issued certificate chain.

        :param certificate_chain_pem: The PEM encoded certificate chain, leaf first.
        :param identifiers: The order's identifiers.
        """
        pass

    @abc.abstractmethod
    async def store_account_url(self, name: str, url: str) -> None:
        pass

    @abc.abstractmethod
    async def load_account_url(self, name: str) -> typing.Optional[str]:
        """Returns the stored account URL or *None* if there is none."""
        pass


@PluginRegistry.register_plugin("file")
class FileStore(CertificateStore):
    """Stores certificates and account URLs in a directory tree.

    Layout::

        <base_dir>/accounts/<name>.acc
        <base_dir>/certificates/<first identifier>/fullchain.pem
    """

    class Config(CertificateStore.Config, env_prefix="CERTIFIKA_STORE_"):
        type: typing.Literal["file"] = "file"
        base_dir: Path = Path("~/.config/certifika")
        """The directory to store certificates and accounts in."""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self.base_dir = Path(cfg.base_dir).expanduser()

    def certificate_path(self, identifiers: typing.Sequence[str]) -> Path:
        name = _certificate_name(identifiers)
        return self.base_dir / "certificates" / name / "fullchain.pem"

    def _account_path(self, name: str) -> Path:
        return self.base_dir / "accounts" / f"{name}.acc"

    @staticmethod
    def _write(path: Path, data: str, mode: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.touch(mode) if not tmp.exists() else tmp.chmod(mode)
        tmp.write_text(data)
        os.replace(tmp, path)

    async def store(self, certificate_chain_pem, identifiers) -> None:
        path = self.certificate_path(identifiers)
        self._write(path, certificate_chain_pem, CERT_FILE_MODE)
        logger.info("Stored certificate for %s at %s", ", ".join(identifiers), path)

    async def store_account_url(self, name, url) -> None:
        self._write(self._account_path(name), url, ACCOUNT_FILE_MODE)

    async def load_account_url(self, name) -> typing.Optional[str]:
        try:
            return self._account_path(name).read_text().strip() or None
        except FileNotFoundError:
            return None


@PluginRegistry.register_plugin("vault")
class VaultStore(CertificateStore):
    """Stores certificates and account URLs as secrets in a HashiCorp Vault KV version 2 engine.

    Layout::

        <prefix>/accounts/<name>.acc
        <prefix>/certificates/<first identifier>

    Each secret holds its content under the key *value*. The hvac client is blocking, so its
    calls run in the event loop's default executor.
    """

    class Config(CertificateStore.Config, env_prefix="CERTIFIKA_VAULT_"):
        type: typing.Literal["vault"] = "vault"
        address: typing.Optional[str] = None
        """The Vault server's URL, *VAULT_ADDR* if unset."""
        token: typing.Optional[str] = None
        """The Vault token, *VAULT_TOKEN* if unset."""
        mount_point: str = "secret"
        prefix: str = "certifika"
        """The path below the mount point that all secrets are stored under."""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self.mount_point = cfg.mount_point
        self.prefix = cfg.prefix.strip("/")
        self._client = hvac.Client(url=cfg.address, token=cfg.token)

    def certificate_path(self, identifiers: typing.Sequence[str]) -> str:
        return f"{self.prefix}/certificates/{_certificate_name(identifiers)}"

    def _account_path(self, name: str) -> str:
        return f"{self.prefix}/accounts/{name}.acc"

    async def _run(self, func, *args, **kwargs):
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _write(self, path: str, value: str) -> None:
        await self._run(
            self._client.secrets.kv.v2.create_or_update_secret,
            path=path,
            secret={"value": value},
            mount_point=self.mount_point,
        )

    async def store(self, certificate_chain_pem, identifiers) -> None:
        path = self.certificate_path(identifiers)
        await self._write(path, certificate_chain_pem)
        logger.info("Stored certificate for %s in vault at %s/%s", ", ".join(identifiers), self.mount_point, path)

    async def store_account_url(self, name, url) -> None:
        await self._write(self._account_path(name), url)

    async def load_account_url(self, name) -> typing.Optional[str]:
        try:
            resp = await self._run(
                self._client.secrets.kv.v2.read_secret_version,
                path=self._account_path(name),
                mount_point=self.mount_point,
                raise_on_deleted_version=True,
            )
        except hvac.exceptions.InvalidPath:
            return None
        return resp["data"]["data"].get("value") or None
