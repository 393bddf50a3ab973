from __future__ import annotations

from aiohttp import web
from aiohttp.test_utils import TestServer
import pytest

from storefront.errors import VerificationError
from storefront.services.verification import VERIFY_PATH, VerificationClient


async def _serve(handler) -> TestServer:
    app = web.Application()
    app.router.add_post(VERIFY_PATH, handler)
    server = TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_verify_posts_order_id_and_returns_body() -> None:
    seen: list[dict] = []

    async def handler(request: web.Request) -> web.Response:
        seen.append(await request.json())
        return web.json_response({"success": True, "result": [{"orderid": "o1", "statuspay": "Оплачено"}]})

    server = await _serve(handler)
    client = VerificationClient(str(server.make_url("")))
    try:
        body = await client.verify("o1")
    finally:
        await client.close()
        await server.close()

    assert seen == [{"orderId": "o1"}]
    assert body["result"][0]["statuspay"] == "Оплачено"


@pytest.mark.asyncio
async def test_http_error_becomes_verification_error() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"error": "workflow crashed"}, status=500)

    server = await _serve(handler)
    client = VerificationClient(str(server.make_url("")))
    try:
        with pytest.raises(VerificationError, match="workflow crashed"):
            await client.verify("o1")
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_invalid_json_becomes_verification_error() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text="<html>oops</html>")

    server = await _serve(handler)
    client = VerificationClient(str(server.make_url("")))
    try:
        with pytest.raises(VerificationError, match="not valid JSON"):
            await client.verify("o1")
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_unreachable_service_becomes_verification_error() -> None:
    client = VerificationClient("http://127.0.0.1:9", timeout_seconds=1)
    try:
        with pytest.raises(VerificationError):
            await client.verify("o1")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_empty_order_id_is_rejected() -> None:
    client = VerificationClient("http://127.0.0.1:9")
    with pytest.raises(ValueError):
        await client.verify("")
