import asyncio
import logging
import logging.config
import os
from pathlib import Path
from typing import Any

import click
import yaml
from cryptography import x509
from pydantic import Field
from pydantic_settings import BaseSettings

from certifika.client import AcmeClient, ChallengeProvisioner
from certifika.models.messages import RevocationReason
from certifika.plugin_base import PluginRegistry
from certifika.storage import CertificateStore
from certifika.util import generate_csr, generate_ec_key, generate_rsa_key, load_private_key

logger = logging.getLogger(__name__)

challenge_provisioner_registry = PluginRegistry.get_registry(ChallengeProvisioner)
certificate_store_registry = PluginRegistry.get_registry(CertificateStore)


class Config(BaseSettings, extra="forbid", env_prefix="CERTIFIKA_"):
    client: AcmeClient.Config = Field(default_factory=AcmeClient.Config)
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config or {})


def setup_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(
            level=os.environ.get("CERTIFIKA_LOG_LEVEL", "INFO").upper(),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )


def _client_config(ctx) -> AcmeClient.Config:
    config: Config = ctx.obj
    return config.client


@click.group()
@click.option("--config-file", envvar="CERTIFIKA_CONFIG_FILE", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def main(ctx, config_file):
    config = load_config(config_file) if config_file else Config()
    setup_logging(config)
    ctx.obj = config


@main.command()
def plugins():
    """Lists the available plugins and their respective config strings."""
    for plugins in [
        ("Challenge provisioners", challenge_provisioner_registry.config_mapping()),
        ("Certificate stores", certificate_store_registry.config_mapping()),
    ]:
        click.echo(
            f"{plugins[0]}: {', '.join([f'{app.__name__} ({config_name})' for config_name, app in plugins[1].items()])}"
        )


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="ec",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    account_key_file = Path(account_key_file)
    if key_type == "rsa":
        generate_rsa_key(account_key_file)
    else:
        generate_ec_key(account_key_file)


@main.command()
@click.pass_context
def register(ctx):
    """Registers the account key with the CA, or looks up its existing account."""

    async def _register():
        async with AcmeClient(_client_config(ctx)) as client:
            return client.account

    account = asyncio.run(_register())
    click.echo(f"Account {account.kid}: {account.status.value}")


@main.command()
@click.argument("domains", nargs=-1, required=True)
@click.option(
    "--key-file",
    type=click.Path(dir_okay=False),
    required=True,
    help="Certificate key, generated if it does not exist.",
)
@click.option("--csr-file", type=click.Path(dir_okay=False), help="Where to write the CSR.")
@click.option("--out", type=click.Path(dir_okay=False), help="Where to write the certificate chain.")
@click.pass_context
def issue(ctx, domains, key_file, csr_file, out):
    """Obtains a certificate for the given domains."""
    key_file = Path(key_file)
    if key_file.exists():
        try:
            key = load_private_key(key_file)
        except ValueError as e:
            raise click.BadParameter(f"No usable private key in {key_file}: {e}", param_hint="--key-file")
    else:
        click.echo(f"Generating certificate key at {key_file}.")
        key = generate_ec_key(key_file)

    csr = generate_csr(domains[0], key, Path(csr_file) if csr_file else None, list(domains))

    async def _issue():
        async with AcmeClient(_client_config(ctx)) as client:
            return await client.issue(list(domains), csr)

    issued = asyncio.run(_issue())

    if out:
        Path(out).write_text(issued.pem)
        click.echo(f"Wrote certificate chain to {out}.")
    else:
        click.echo(issued.pem, nl=False)


@main.command()
@click.argument("certificate-file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--reason",
    type=click.Choice([reason.name for reason in RevocationReason]),
    help="RFC 5280 revocation reason.",
)
@click.pass_context
def revoke(ctx, certificate_file, reason):
    """Revokes the first certificate in the given PEM file."""
    with open(certificate_file, "rb") as pem:
        certificate = x509.load_pem_x509_certificate(pem.read())

    async def _revoke():
        async with AcmeClient(_client_config(ctx)) as client:
            return await client.revoke(certificate, RevocationReason[reason] if reason else None)

    if asyncio.run(_revoke()):
        click.echo(f"Revoked certificate {certificate.serial_number:x}.")


if __name__ == "__main__":
    main()
