import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from certifika.client.account import ExternalAccountBindingCredentials
from certifika.client.encoding import b64encode
from certifika.client.exceptions import (
    AccountStatusError,
    ConfigurationError,
    ProtocolError,
    SigningError,
)
from certifika.client.signer import Signer
from certifika.models import AccountStatus

from .fake_acme import FakeAcmeServer
from .helpers import Stack


@pytest.mark.asyncio
async def test_register_new_account(server, signer):
    stack = Stack(server, signer)
    assert stack.accounts.kid is None

    account = await stack.accounts.ensure_account(["mailto:admin@example.com"])

    assert account.status == AccountStatus.VALID
    assert account.kid.startswith(server.url("/acct/"))
    assert account.contact == ("mailto:admin@example.com",)
    assert stack.accounts.kid == account.kid

    request = server.signed("/new-account")[0]
    assert "jwk" in request.protected and "kid" not in request.protected
    assert request.payload["termsOfServiceAgreed"] is True
    assert request.payload["contact"] == ["mailto:admin@example.com"]


@pytest.mark.asyncio
async def test_existing_account_is_found(server, signer):
    first = await Stack(server, signer).accounts.ensure_account()
    second = await Stack(server, signer).accounts.ensure_account()
    assert first.kid == second.kid
    assert len(server.accounts) == 1


@pytest.mark.asyncio
async def test_account_not_valid(server, signer):
    server.account_status = "revoked"
    stack = Stack(server, signer)
    with pytest.raises(AccountStatusError, match="revoked"):
        await stack.accounts.ensure_account()


@pytest.mark.asyncio
async def test_lookup(server, signer):
    stack = Stack(server, signer)
    with pytest.raises(ProtocolError) as excinfo:
        await stack.accounts.lookup()
    assert excinfo.value.code == "accountDoesNotExist"
    assert server.signed("/new-account")[0].payload == {"onlyReturnExisting": True}

    account = await stack.accounts.ensure_account()
    assert (await Stack(server, signer).accounts.lookup()).kid == account.kid


@pytest.mark.asyncio
async def test_update_and_deactivate(server, signer):
    stack = Stack(server, signer)
    await stack.accounts.ensure_account(["mailto:old@example.com"])

    account = await stack.accounts.update(["mailto:new@example.com"])
    assert account.contact == ("mailto:new@example.com",)
    assert server.signed("/acct/")[-1].protected["kid"] == account.kid

    account = await stack.accounts.deactivate()
    assert account.status == AccountStatus.DEACTIVATED
    assert server.accounts[account.kid]["status"] == "deactivated"


@pytest.mark.asyncio
async def test_requests_without_account(server, signer):
    stack = Stack(server, signer)
    with pytest.raises(SigningError):
        await stack.accounts.deactivate()


@pytest.mark.asyncio
async def test_key_change(server, signer):
    stack = Stack(server, signer)
    account = await stack.accounts.ensure_account()
    new_signer = Signer(ec.generate_private_key(ec.SECP384R1()))

    await stack.accounts.key_change(new_signer)

    assert stack.transport.signer is new_signer
    # Subsequent requests are signed with the new key.
    await stack.accounts.update(["mailto:rolled@example.com"])
    assert server.signed("/acct/")[-1].protected["alg"] == "ES384"
    # The old key no longer identifies the account.
    with pytest.raises(ProtocolError):
        await Stack(server, signer).accounts.lookup()
    assert (await Stack(server, new_signer).accounts.lookup()).kid == account.kid


@pytest.mark.asyncio
async def test_external_account_required(signer):
    hmac_key = b64encode(b"\x01" * 32)
    server = FakeAcmeServer(external_account_required=True, eab_keys={"kid-1": hmac_key})

    with pytest.raises(ConfigurationError):
        await Stack(server, signer).accounts.ensure_account()
    assert server.signed("/new-account") == []

    account = await Stack(server, signer).accounts.ensure_account(
        eab=ExternalAccountBindingCredentials("kid-1", hmac_key)
    )
    assert account.status == AccountStatus.VALID


@pytest.mark.asyncio
async def test_external_account_binding_wrong_key(signer):
    server = FakeAcmeServer(external_account_required=True, eab_keys={"kid-1": b64encode(b"\x01" * 32)})

    with pytest.raises(ProtocolError) as excinfo:
        await Stack(server, signer).accounts.ensure_account(
            eab=ExternalAccountBindingCredentials("kid-1", b64encode(b"\x02" * 32))
        )
    assert excinfo.value.code == "unauthorized"


def test_eab_credentials_incomplete(signer):
    with pytest.raises(ValueError):
        ExternalAccountBindingCredentials("kid-1", "").create_eab(signer.public_jwk, {})


@pytest.mark.asyncio
async def test_resume(server, signer):
    kid = (await Stack(server, signer).accounts.ensure_account()).kid

    stack = Stack(server, signer)
    account = await stack.accounts.resume(kid)

    assert account.kid == stack.accounts.kid == kid
    request = [r for r in server.requests if r.url == kid][-1]
    assert request.protected["kid"] == kid
    assert request.raw_payload == ""


@pytest.mark.asyncio
async def test_resume_foreign_account(server, signer):
    kid = (await Stack(server, Signer(ec.generate_private_key(ec.SECP256R1()))).accounts.ensure_account()).kid

    stack = Stack(server, signer)
    with pytest.raises(ProtocolError) as excinfo:
        await stack.accounts.resume(kid)

    assert excinfo.value.code == "malformed"
    assert stack.accounts.kid is None
