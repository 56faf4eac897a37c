"""
Tests for the directory portal client
"""
import json
import sys
import os
import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from directory import DirectoryClient
from errors import DirectoryError
from models import StreamDescriptor

DESCRIPTOR = StreamDescriptor.build(
    "demo", "tcp", "localhost", 9600, "480x270", "400k", "news,live")


def portal(status_code=200, requests=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})
    return httpx.MockTransport(handler)


class TestDirectoryClient:

    @pytest.mark.asyncio
    async def test_new_stream_posts_descriptor(self):
        requests = []
        client = DirectoryClient("http://portal.test/api/", api_token="secret",
                                 transport=portal(requests=requests))
        await client.new_stream(DESCRIPTOR)
        await client.aclose()

        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://portal.test/api/streams"
        assert request.headers["X-API-Token"] == "secret"
        assert json.loads(request.content) == DESCRIPTOR.to_wire()

    @pytest.mark.asyncio
    async def test_close_stream_posts_same_descriptor(self):
        requests = []
        client = DirectoryClient("http://portal.test", transport=portal(requests=requests))
        await client.close_stream(DESCRIPTOR)
        await client.aclose()

        assert str(requests[0].url) == "http://portal.test/streams/close"
        assert json.loads(requests[0].content)["streamName"] == "demo"
        assert "X-API-Token" not in requests[0].headers

    @pytest.mark.asyncio
    async def test_check_succeeds_against_healthy_portal(self):
        requests = []
        client = DirectoryClient("http://portal.test", transport=portal(requests=requests))
        await client.check()
        await client.aclose()
        assert requests[0].method == "GET"
        assert requests[0].url.path == "/health"

    @pytest.mark.asyncio
    async def test_missing_portal_url_is_lookup_failure(self):
        client = DirectoryClient(None, transport=portal())
        with pytest.raises(DirectoryError):
            await client.check()
        with pytest.raises(DirectoryError):
            await client.new_stream(DESCRIPTOR)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises_directory_error(self):
        client = DirectoryClient("http://portal.test", transport=portal(status_code=503))
        with pytest.raises(DirectoryError):
            await client.check()
        with pytest.raises(DirectoryError):
            await client.new_stream(DESCRIPTOR)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_raises_directory_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DirectoryClient("http://portal.test", transport=httpx.MockTransport(handler))
        with pytest.raises(DirectoryError):
            await client.close_stream(DESCRIPTOR)
        await client.aclose()
