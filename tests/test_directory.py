import asyncio

import pytest
from multidict import CIMultiDict

from certifika.client.directory import Directory, DirectoryClient
from certifika.client.exceptions import EncodingError, ProtocolError, TransportError
from certifika.client.http import HttpTransport, RawResponse

from .helpers import Sleeper


class FlakyDirectory(HttpTransport):
    def __init__(self, server, failures=0):
        self.server = server
        self.failures = failures
        self.calls = 0

    async def request(self, method, url, data=None, headers=None):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise TransportError("connection reset")
        return await self.server.request(method, url, data, headers)


@pytest.mark.asyncio
async def test_fetch_and_cache(server):
    client = DirectoryClient(server.directory_url, server)

    directory, again = await asyncio.gather(client.get(), client.get())

    assert directory is again
    assert server.directory_fetches == 1
    assert directory["newOrder"] == server.url("/new-order")
    assert "keyChange" in directory
    assert "meta" not in directory.resources
    assert directory.meta.terms_of_service == server.url("/terms")
    assert directory.meta.caa_identities == ("acme.test",)
    assert directory.meta.external_account_required is False


@pytest.mark.asyncio
async def test_url_for_missing_resource(server):
    client = DirectoryClient(server.directory_url, server)
    with pytest.raises(ProtocolError, match="renewalInfo"):
        await client.url_for("renewalInfo")


@pytest.mark.asyncio
async def test_invalidate_refetches(server):
    client = DirectoryClient(server.directory_url, server)
    await client.get()
    await client.invalidate()
    await client.get()
    assert server.directory_fetches == 2


@pytest.mark.asyncio
async def test_network_retries(server):
    sleeper = Sleeper()
    http = FlakyDirectory(server, failures=2)
    client = DirectoryClient(server.directory_url, http, retries=3, backoff=1.0, sleep=sleeper)

    await client.get()

    assert http.calls == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_network_retries_exhausted(server):
    sleeper = Sleeper()
    http = FlakyDirectory(server, failures=5)
    client = DirectoryClient(server.directory_url, http, retries=2, sleep=sleeper)

    with pytest.raises(TransportError):
        await client.get()
    assert http.calls == 3


@pytest.mark.asyncio
async def test_error_response():
    class NotFound(HttpTransport):
        async def request(self, method, url, data=None, headers=None):
            return RawResponse(404, CIMultiDict({"Content-Type": "text/plain"}), b"not found")

    with pytest.raises(ProtocolError) as excinfo:
        await DirectoryClient("https://acme.test/directory", NotFound()).get()
    assert excinfo.value.status == 404


def test_directory_is_immutable():
    directory = Directory("https://acme.test/directory", {"newNonce": "https://acme.test/n"})
    with pytest.raises(TypeError):
        directory.resources["newNonce"] = "https://evil.test"
    assert directory.get("newOrder") is None


def test_directory_not_an_object():
    with pytest.raises(EncodingError):
        Directory("https://acme.test/directory", ["newNonce"])
