import asyncio
import logging

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from certifika.client import AcmeClient, WebrootProvisioner
from certifika.client.exceptions import AccountStatusError, ConfigurationError
from certifika.client.signer import Signer
from certifika.models import AccountStatus, OrderStatus
from certifika.util import generate_ec_key

from .helpers import RecordingProvisioner, fast_poller, make_csr


@pytest.fixture
def config(server, tmp_path):
    return AcmeClient.Config(
        directory=server.directory_url,
        contact=["mailto:admin@example.com"],
        storage={"type": "file", "base_dir": tmp_path},
    )


def make_client(config, server, signer, **kwargs):
    kwargs.setdefault("provisioner", RecordingProvisioner())
    kwargs.setdefault("poller", fast_poller())
    return AcmeClient(config, http=server, signer=signer, **kwargs)


@pytest.mark.asyncio
async def test_start_stores_account_url(config, server, signer, tmp_path):
    async with make_client(config, server, signer) as client:
        assert client.account.status == AccountStatus.VALID
        assert (await client.directory()).url == server.directory_url

    stored = (tmp_path / "accounts" / "default.acc").read_text()
    assert stored == client.account.kid
    assert server.closed is False


@pytest.mark.asyncio
async def test_start_replaces_stale_account_url(config, server, signer, tmp_path, caplog):
    path = tmp_path / "accounts" / "default.acc"
    path.parent.mkdir(parents=True)
    path.write_text("https://acme.test/acct/999")

    with caplog.at_level(logging.WARNING, logger="certifika.client.client"):
        async with make_client(config, server, signer) as client:
            pass

    assert "differs" in caplog.text
    assert path.read_text() == client.account.kid


@pytest.mark.asyncio
async def test_start_resumes_stored_account(config, server, signer, tmp_path):
    async with make_client(config, server, signer) as client:
        kid = client.account.kid
    registrations = len(server.signed("/new-account"))

    async with make_client(config, server, signer) as client:
        assert client.account.kid == kid
        assert client.account.status == AccountStatus.VALID
        issued = await client.issue(["example.com"], make_csr(["example.com"]))

    assert len(server.signed("/new-account")) == registrations
    assert issued.order.status == OrderStatus.VALID
    assert (tmp_path / "accounts" / "default.acc").read_text() == kid


@pytest.mark.asyncio
async def test_start_registers_when_stored_account_is_gone(config, server, signer, tmp_path, caplog):
    async with make_client(config, server, signer) as client:
        kid = client.account.kid
    server.accounts[kid]["status"] = "deactivated"

    with caplog.at_level(logging.WARNING, logger="certifika.client.client"):
        client = make_client(config, server, signer)
        with pytest.raises(AccountStatusError):
            await client.start()

    assert "unusable" in caplog.text


@pytest.mark.asyncio
async def test_start_account_not_valid(config, server, signer):
    server.account_status = "deactivated"
    client = make_client(config, server, signer)

    with pytest.raises(AccountStatusError) as excinfo:
        await client.start()

    assert excinfo.value.stage == "account"


@pytest.mark.asyncio
async def test_issue_and_revoke(config, server, signer, tmp_path):
    async with make_client(config, server, signer) as client:
        issued = await client.issue(["example.com", "www.example.com"], make_csr(["example.com", "www.example.com"]))
        assert issued.order.status == OrderStatus.VALID
        assert await client.revoke(issued.leaf)

    stored = tmp_path / "certificates" / "example.com" / "fullchain.pem"
    assert stored.read_text() == issued.pem
    assert server.revoked == [issued.leaf.serial_number]


@pytest.mark.asyncio
async def test_concurrent_issuance(config, server, signer):
    async with make_client(config, server, signer) as client:
        results = await asyncio.gather(
            client.issue(["a.example.com"], make_csr(["a.example.com"])),
            client.issue(["b.example.com"], make_csr(["b.example.com"])),
        )

    assert {r.order.url for r in results} == set(server.orders)
    nonces = [r.protected["nonce"] for r in server.requests]
    assert len(nonces) == len(set(nonces))


@pytest.mark.asyncio
async def test_account_operations(config, server, signer):
    async with make_client(config, server, signer) as client:
        kid = client.account.kid

        updated = await client.account_update(["mailto:ops@example.com"])
        assert updated.contact == ("mailto:ops@example.com",)

        new_signer = Signer(ec.generate_private_key(ec.SECP384R1()))
        await client.key_change(new_signer)
        assert client.signer is new_signer
        assert (await client.account_lookup()).kid == kid

        deactivated = await client.account_deactivate()
        assert deactivated.status == AccountStatus.DEACTIVATED


@pytest.mark.asyncio
async def test_key_change_from_file(config, server, signer, tmp_path):
    generate_ec_key(tmp_path / "new.key")

    async with make_client(config, server, signer) as client:
        await client.key_change(str(tmp_path / "new.key"))
        assert client.signer.thumbprint() == Signer.from_file(tmp_path / "new.key").thumbprint()


def test_private_key_from_config(config, server, tmp_path):
    generate_ec_key(tmp_path / "account.key")
    config.private_key = str(tmp_path / "account.key")

    client = AcmeClient(config, http=server)

    assert client.signer.thumbprint() == Signer.from_file(tmp_path / "account.key").thumbprint()


def test_no_account_key(config, server):
    with pytest.raises(ConfigurationError):
        AcmeClient(config, http=server)


def test_provisioner_from_config(server, signer):
    config = AcmeClient.Config(
        directory=server.directory_url,
        challenge_provisioner={"type": "webroot", "path": "/var/www/html"},
    )
    client = AcmeClient(config, http=server, signer=signer)
    assert isinstance(client.orders._provisioner, WebrootProvisioner)


@pytest.mark.asyncio
async def test_close(config, server, signer):
    client = make_client(config, server, signer)
    await client.close()
    assert server.closed is False

    owned = AcmeClient(config, signer=signer)
    assert owned._owns_http
    await owned.close()
    assert owned._http._session is None
