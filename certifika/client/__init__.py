from .client import AcmeClient
from .challenge_provisioner import ChallengeProvisioner, DummyProvisioner, WebrootProvisioner
from .exceptions import (
    AcmeClientException,
    AuthorizationsFailed,
    ProtocolError,
    StateError,
    NoSupportedChallenge,
    PollTimeout,
    ProvisionError,
)
from .order import IssuedCertificate

__all__ = [
    "AcmeClient",
    "ChallengeProvisioner",
    "DummyProvisioner",
    "WebrootProvisioner",
    "AcmeClientException",
    "AuthorizationsFailed",
    "ProtocolError",
    "StateError",
    "NoSupportedChallenge",
    "PollTimeout",
    "ProvisionError",
    "IssuedCertificate",
]
