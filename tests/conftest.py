import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from certifika.client.signer import Signer

from .fake_acme import FakeAcmeServer


@pytest.fixture
def server():
    return FakeAcmeServer()


@pytest.fixture
def account_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def signer(account_key):
    return Signer(account_key)
