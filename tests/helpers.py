import typing

from cryptography.hazmat.primitives.asymmetric import ec

from certifika.client.account import AccountManager
from certifika.client.challenge_provisioner import ChallengeProvisioner
from certifika.client.directory import DirectoryClient
from certifika.client.exceptions import ProvisionError
from certifika.client.order import OrderEngine
from certifika.client.polling import Poller
from certifika.client.signer import Signer
from certifika.client.transport import AcmeTransport
from certifika.models import ChallengeType
from certifika.util import generate_csr


class Sleeper:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: typing.List[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


class Clock:
    """Monotonic clock that advances by the delays passed to :meth:`sleep`."""

    def __init__(self):
        self.now = 0.0
        self.delays: typing.List[float] = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.delays.append(delay)
        self.now += delay


class RecordingProvisioner(ChallengeProvisioner):
    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])

    def __init__(self, supported=None, fail_provision=False, fail_deprovision=False):
        super().__init__()
        if supported is not None:
            self.SUPPORTED_CHALLENGES = frozenset(supported)
        self.fail_provision = fail_provision
        self.fail_deprovision = fail_deprovision
        self.provisioned: typing.Dict[str, tuple] = {}
        self.deprovisioned: typing.List[tuple] = []

    async def provision(self, challenge_type, identifier, token, key_authorization):
        if self.fail_provision:
            raise ProvisionError(f"cannot provision {identifier}")
        self.provisioned[identifier] = (challenge_type, token, key_authorization)

    async def deprovision(self, challenge_type, identifier, token):
        self.deprovisioned.append((challenge_type, identifier, token))
        if self.fail_deprovision:
            raise ProvisionError(f"cannot deprovision {identifier}")


def fast_poller(clock: Clock = None, **kwargs) -> Poller:
    cfg = dict(interval=1.0, max_interval=30.0, jitter=0.0, max_attempts=10, timeout=300.0)
    cfg.update(kwargs)
    clock = clock or Clock()
    return Poller(Poller.Config(**cfg), sleep=clock.sleep, clock=clock)


def make_csr(names: typing.List[str], key=None):
    key = key or ec.generate_private_key(ec.SECP256R1())
    return generate_csr(names[0], key, None, names)


class Stack:
    """The protocol components wired against a fake server, without the :class:`AcmeClient` facade."""

    def __init__(self, server, signer: Signer, provisioner=None, poller=None, store=None, **engine_kwargs):
        self.server = server
        self.sleeper = Sleeper()
        self.directory = DirectoryClient(server.directory_url, server, sleep=self.sleeper)
        self.transport = AcmeTransport(server, self.directory, signer, sleep=self.sleeper)
        self.accounts = AccountManager(self.transport, self.directory)
        self.provisioner = provisioner or RecordingProvisioner()
        self.clock = Clock()
        self.engine = OrderEngine(
            self.transport,
            self.accounts,
            self.provisioner,
            poller=poller or fast_poller(self.clock),
            store=store,
            **engine_kwargs,
        )
