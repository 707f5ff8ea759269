import logging
import tempfile
import unittest
from pathlib import Path

import certifika.util
from certifika.client import AcmeClient, PollTimeout, ProtocolError, StateError
from certifika.client.signer import Signer
from certifika.models import ChallengeType, OrderStatus

from .fake_acme import FakeAcmeServer
from .helpers import Clock, RecordingProvisioner, fast_poller

log = logging.getLogger("certifika.tests.scenarios")


class TestScenario:
    NAMES = ["example.com"]

    @property
    def name(self):
        return self.__class__.__name__[4:]

    def setUp(self) -> None:
        self.log = logging.getLogger(f"certifika.tests.{self.name}")
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name)

        self.account_key = certifika.util.generate_ec_key(self.path / "account.key")
        key = certifika.util.generate_rsa_key(self.path / "the.key")
        self.csr = certifika.util.generate_csr(self.NAMES[0], key, self.path / "the.csr", names=self.NAMES)

        self.server = FakeAcmeServer()
        self.provisioner = RecordingProvisioner()
        self.clock = Clock()
        self.config = AcmeClient.Config(
            directory=self.server.directory_url,
            contact=[f"mailto:{self.name.lower()}@example.com"],
            storage={"type": "file", "base_dir": self.path / "store"},
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def asyncSetUp(self) -> None:
        self.client = AcmeClient(
            self.config,
            http=self.server,
            signer=Signer(self.account_key),
            provisioner=self.provisioner,
            poller=fast_poller(self.clock),
        )
        await self.client.start()

    async def asyncTearDown(self) -> None:
        await self.client.close()


class TestHappyPath(TestScenario, unittest.IsolatedAsyncioTestCase):
    async def test_run(self):
        self.server.authz_polls["example.com"] = ["pending", "valid"]
        self.server.order_polls = ["processing", "valid"]

        issued = await self.client.issue(self.NAMES, self.csr)

        self.assertEqual(self.server.directory_fetches, 1)
        self.assertEqual(len(self.server.accounts), 1)
        self.assertEqual(self.provisioner.provisioned["example.com"][0], ChallengeType.DNS_01)
        self.assertEqual(issued.order.status, OrderStatus.VALID)
        self.assertTrue(issued.pem.startswith("-----BEGIN CERTIFICATE-----"))

        stored = self.path / "store" / "certificates" / "example.com" / "fullchain.pem"
        self.assertEqual(stored.read_text(), issued.pem)
        self.log.info("Issued certificate %x", issued.leaf.serial_number)


class TestInvalidAuthorization(TestScenario, unittest.IsolatedAsyncioTestCase):
    async def test_run(self):
        self.server.authz_polls["example.com"] = [("invalid", "dns-01 self-check failed")]

        with self.assertRaises(StateError) as context:
            await self.client.issue(self.NAMES, self.csr)

        self.assertIn("example.com", str(context.exception))
        self.assertIn("dns-01 self-check failed", str(context.exception))
        self.assertEqual(context.exception.stage, "authorization")
        self.assertEqual(self.server.signed("/finalize/"), [])


class TestRateLimited(TestScenario, unittest.IsolatedAsyncioTestCase):
    async def test_run(self):
        self.server.fail(
            "/new-order",
            "rateLimited",
            "Too many certificates already issued",
            status=429,
            headers={"Retry-After": "3600"},
        )

        with self.assertRaises(ProtocolError) as context:
            await self.client.issue(self.NAMES, self.csr)

        self.assertEqual(context.exception.retry_after, 3600)
        self.assertEqual(context.exception.code, "rateLimited")
        new_orders = [a for a in self.server.attempts if a.url == self.server.url("/new-order")]
        self.assertEqual(len(new_orders), 1)


class TestPollTimeout(TestScenario, unittest.IsolatedAsyncioTestCase):
    async def test_run(self):
        self.server.authz_polls["example.com"] = []

        with self.assertRaises(PollTimeout) as context:
            await self.client.issue(self.NAMES, self.csr)

        self.assertNotIsInstance(context.exception, StateError)
        self.assertEqual(context.exception.stage, "authorization")
        self.assertEqual(len(self.provisioner.deprovisioned), 1)


class TestWildcard(TestScenario, unittest.IsolatedAsyncioTestCase):
    NAMES = ["*.example.com", "example.com"]

    async def test_run(self):
        issued = await self.client.issue(self.NAMES, self.csr)

        self.assertEqual(issued.order.names, frozenset(self.NAMES))
        self.assertEqual(self.provisioner.provisioned["*.example.com"][0], ChallengeType.DNS_01)
        self.assertTrue((self.path / "store" / "certificates" / "_.example.com" / "fullchain.pem").exists())
