from __future__ import annotations

import asyncio
import unittest
from unittest import mock

import aiohttp
from aiohttp import test_utils, web

from utils.errors import (
    PermanentRequestError,
    RateLimitedError,
    TransientProviderError,
    UnresolvedKeyError,
    classify_error,
    is_transient,
)
from utils.http_client import ResilientHttpClient, parse_retry_after


class ClassifyErrorTests(unittest.TestCase):
    def test_provider_errors_pass_through(self) -> None:
        err = UnresolvedKeyError("mint")
        self.assertIs(classify_error(err), err)

    def test_timeouts_and_connection_errors_are_transient(self) -> None:
        self.assertIsInstance(classify_error(asyncio.TimeoutError()), TransientProviderError)
        self.assertIsInstance(classify_error(aiohttp.ClientConnectionError("reset")), TransientProviderError)

    def test_response_errors_by_status(self) -> None:
        def response_error(status: int) -> aiohttp.ClientResponseError:
            return aiohttp.ClientResponseError(request_info=mock.Mock(), history=(), status=status, message="x")

        self.assertIsInstance(classify_error(response_error(429)), RateLimitedError)
        self.assertIsInstance(classify_error(response_error(502)), TransientProviderError)
        self.assertIsInstance(classify_error(response_error(404)), PermanentRequestError)

    def test_anything_else_is_permanent(self) -> None:
        mapped = classify_error(KeyError("priceUsd"))
        self.assertIsInstance(mapped, PermanentRequestError)
        self.assertFalse(is_transient(mapped))
        self.assertTrue(is_transient(RateLimitedError("slow down")))

    def test_parse_retry_after(self) -> None:
        self.assertEqual(parse_retry_after("12"), 12.0)
        self.assertEqual(parse_retry_after(" 1.5 "), 1.5)
        self.assertIsNone(parse_retry_after("0"))
        self.assertIsNone(parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT"))
        self.assertIsNone(parse_retry_after(None))


class ResilientHttpClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        async def ok(request: web.Request) -> web.Response:
            return web.json_response({"pairs": [], "ua": request.headers.get("User-Agent", "")})

        async def limited(request: web.Request) -> web.Response:
            return web.Response(status=429, headers={"Retry-After": "7"})

        async def down(request: web.Request) -> web.Response:
            return web.Response(status=503)

        async def missing(request: web.Request) -> web.Response:
            return web.Response(status=404)

        async def garbage(request: web.Request) -> web.Response:
            return web.Response(status=200, text="<html>not json</html>")

        async def search(request: web.Request) -> web.Response:
            return web.json_response({"q": request.query.get("q"), "keys": sorted(request.query)})

        app = web.Application()
        app.router.add_get("/ok", ok)
        app.router.add_get("/limited", limited)
        app.router.add_get("/down", down)
        app.router.add_get("/missing", missing)
        app.router.add_get("/garbage", garbage)
        app.router.add_get("/search", search)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.client = ResilientHttpClient(timeout_seconds=5, headers={"User-Agent": "unit-test"})

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await self.server.close()

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    async def test_ok_returns_decoded_payload(self) -> None:
        payload = await self.client.get_json(self.url("/ok"), source="DexScreener")
        self.assertEqual(payload, {"pairs": [], "ua": "unit-test"})
        self.assertEqual(self.client.snapshot_stats()["dexscreener"]["ok"], 1)

    async def test_query_params_are_encoded(self) -> None:
        payload = await self.client.get_json(self.url("/search"), source="dexscreener", params={"q": "sol usdc&limit=1"})
        self.assertEqual(payload, {"q": "sol usdc&limit=1", "keys": ["q"]})

    async def test_429_raises_rate_limited_with_retry_after(self) -> None:
        with self.assertRaises(RateLimitedError) as ctx:
            await self.client.get_json(self.url("/limited"), source="dexscreener")
        self.assertEqual(ctx.exception.retry_after, 7.0)
        self.assertEqual(ctx.exception.provider, "dexscreener")
        self.assertEqual(self.client.snapshot_stats()["dexscreener"]["rate_limited"], 1)

    async def test_status_classification(self) -> None:
        with self.assertRaises(TransientProviderError) as down:
            await self.client.get_json(self.url("/down"), source="p")
        self.assertEqual(down.exception.status, 503)
        with self.assertRaises(PermanentRequestError):
            await self.client.get_json(self.url("/missing"), source="p")
        with self.assertRaises(PermanentRequestError):
            await self.client.get_json(self.url("/garbage"), source="p")
        stats = self.client.snapshot_stats(reset=True)["p"]
        self.assertEqual(stats["fail"], 3)
        self.assertEqual(stats["error_percent"], 100.0)
        self.assertEqual(self.client.snapshot_stats(), {})


if __name__ == "__main__":
    unittest.main()
