"""Tests for the httpx upstream client (mocked HTTP)."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.gateway.errors import UpstreamError
from app.gateway.proxy_pool import ProxyPool
from app.gateway.types import Credential, Orientation, ProxyConfig, UpstreamErrorKind
from app.gateway.upstream import HttpUpstreamClient


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set (needed for raise_for_status)."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        resp = httpx.Response(status_code, json=json_data, request=request)
    else:
        resp = httpx.Response(status_code, text=text, request=request)
    return resp


def _url_response(url: str = "https://cdn.example.com/out.png") -> httpx.Response:
    return _make_httpx_response(200, json_data={"data": [{"url": url}]})


def _mock_client(mock_client_cls, response=None, side_effect=None) -> AsyncMock:
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
        mock_client.get.side_effect = side_effect
    else:
        mock_client.post.return_value = response
        mock_client.get.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return mock_client


@pytest.fixture
def client():
    return HttpUpstreamClient(base_url="https://upstream.example.com/", image_timeout=10, video_timeout=20)


@pytest.fixture
def credential():
    return Credential(id=7, label="main", secret="sk-upstream")


class TestGeneration:
    @pytest.mark.asyncio
    async def test_generate_image(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, _url_response())

            url = await client.generate_image("a cat", credential, 540, 360)

            assert url == "https://cdn.example.com/out.png"
            args, kwargs = mock_client.post.call_args
            assert args[0] == "https://upstream.example.com/v1/images/generations"
            assert kwargs["json"]["size"] == "540x360"
            assert kwargs["json"]["prompt"] == "a cat"
            assert kwargs["headers"]["Authorization"] == "Bearer sk-upstream"
            assert mock_client_cls.call_args.kwargs["timeout"] == 10

    @pytest.mark.asyncio
    async def test_generate_image_from_image(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, _url_response())

            await client.generate_image_from_image("edit", "data:image/png;base64,xx", credential)

            args, kwargs = mock_client.post.call_args
            assert args[0].endswith("/v1/images/edits")
            assert kwargs["json"]["image"] == "data:image/png;base64,xx"
            assert kwargs["json"]["size"] == "1024x1024"

    @pytest.mark.asyncio
    async def test_generate_video_uses_video_timeout(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, _url_response("https://cdn/v.mp4"))

            url = await client.generate_video("waves", credential, n_frames=450, orientation=Orientation.PORTRAIT)

            assert url == "https://cdn/v.mp4"
            payload = mock_client.post.call_args.kwargs["json"]
            assert payload["n_frames"] == 450
            assert payload["orientation"] == "portrait"
            assert mock_client_cls.call_args.kwargs["timeout"] == 20

    @pytest.mark.asyncio
    async def test_character_flow(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(
                mock_client_cls,
                _make_httpx_response(200, json_data={"data": [{"character_id": "char_1"}]}),
            )
            assert await client.generate_character("https://v/in.mp4", credential) == "char_1"

    @pytest.mark.asyncio
    async def test_remix(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_client(mock_client_cls, _url_response())
            await client.remix_video("s_" + "a" * 32, "make it rain", credential)
            assert mock_client.post.call_args.kwargs["json"]["remix_id"] == "s_" + "a" * 32

    @pytest.mark.asyncio
    async def test_uses_proxy_from_pool(self, credential):
        pool = ProxyPool(proxies=[ProxyConfig(id=1, host="10.0.0.1", port=8080)])
        client = HttpUpstreamClient(base_url="https://upstream.example.com", proxy_pool=pool)
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, _url_response())
            await client.generate_image("a", credential)
            assert mock_client_cls.call_args.kwargs["proxy"] == "http://10.0.0.1:8080"

    @pytest.mark.asyncio
    async def test_socks5_proxy_builds_real_client(self, credential):
        pool = ProxyPool(proxies=[ProxyConfig(id=1, scheme="socks5", host="10.0.0.2", port=1080)])
        proxy_url = pool.next_proxy_url()
        assert proxy_url == "socks5://10.0.0.2:1080"
        async with httpx.AsyncClient(proxy=proxy_url) as real_client:
            assert not real_client.is_closed


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,kind",
        [
            (401, UpstreamErrorKind.UNAUTHORIZED),
            (403, UpstreamErrorKind.UNAUTHORIZED),
            (429, UpstreamErrorKind.RATE_LIMITED),
            (500, UpstreamErrorKind.TRANSPORT),
        ],
    )
    async def test_status_codes(self, client, credential, status_code, kind):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, _make_httpx_response(status_code, text="nope"))
            with pytest.raises(UpstreamError) as exc_info:
                await client.generate_image("a", credential)
            assert exc_info.value.kind == kind
            assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_timeout(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(UpstreamError) as exc_info:
                await client.generate_video("a", credential)
            assert exc_info.value.kind == UpstreamErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connect_error(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, side_effect=httpx.ConnectError("refused"))
            with pytest.raises(UpstreamError) as exc_info:
                await client.generate_image("a", credential)
            assert exc_info.value.kind == UpstreamErrorKind.TRANSPORT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [
            httpx.TooManyRedirects("loop"),
            httpx.DecodingError("bad gzip"),
            httpx.UnsupportedProtocol("ftp"),
        ],
    )
    async def test_other_httpx_errors_are_transport(self, client, credential, exc):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, side_effect=exc)
            with pytest.raises(UpstreamError) as exc_info:
                await client.generate_image("a", credential)
            assert exc_info.value.kind == UpstreamErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_non_json_body(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, _make_httpx_response(200, text="<html>"))
            with pytest.raises(UpstreamError) as exc_info:
                await client.generate_image("a", credential)
            assert exc_info.value.kind == UpstreamErrorKind.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_missing_url(self, client, credential):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, _make_httpx_response(200, json_data={"data": []}))
            with pytest.raises(UpstreamError) as exc_info:
                await client.generate_image("a", credential)
            assert exc_info.value.kind == UpstreamErrorKind.INVALID_RESPONSE


class TestFetchArtifact:
    @pytest.mark.asyncio
    async def test_fetch_returns_bytes(self, client):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            response = httpx.Response(200, content=b"\x89PNG", request=httpx.Request("GET", "https://cdn/x.png"))
            mock_client = _mock_client(mock_client_cls, response)
            assert await client.fetch_artifact("https://cdn/x.png") == b"\x89PNG"
            mock_client.get.assert_awaited_once_with("https://cdn/x.png")

    @pytest.mark.asyncio
    async def test_fetch_404(self, client):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            response = httpx.Response(404, request=httpx.Request("GET", "https://cdn/x.png"))
            _mock_client(mock_client_cls, response)
            with pytest.raises(UpstreamError) as exc_info:
                await client.fetch_artifact("https://cdn/x.png")
            assert exc_info.value.kind == UpstreamErrorKind.TRANSPORT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [httpx.TooManyRedirects("loop"), httpx.DecodingError("bad gzip")])
    async def test_fetch_other_httpx_errors_are_transport(self, client, exc):
        with patch("app.gateway.upstream.httpx.AsyncClient") as mock_client_cls:
            _mock_client(mock_client_cls, side_effect=exc)
            with pytest.raises(UpstreamError) as exc_info:
                await client.fetch_artifact("https://cdn/x.png")
            assert exc_info.value.kind == UpstreamErrorKind.TRANSPORT
