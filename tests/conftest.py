"""Shared fixtures: an in-process fake wallet API."""
import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer, get_port_socket


class FakeWalletApi:
    """Minimal wallet API that records what it receives."""

    def __init__(self):
        self.requests = []
        self.create_status = 201
        self.create_body = {"id": "w-1"}
        self.create_delay = 0.0
        self.balance_status = 200
        self.balance_headers = {}
        self.balance_delay = 0.0

    async def _log(self, request):
        text = await request.text()
        body = json.loads(text) if text else None
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "headers": dict(request.headers),
                "json": body,
            }
        )

    async def create(self, request):
        await self._log(request)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        return web.json_response(self.create_body, status=self.create_status)

    async def balance(self, request):
        await self._log(request)
        if self.balance_delay:
            await asyncio.sleep(self.balance_delay)
        return web.json_response({"balance": 250}, status=self.balance_status, headers=self.balance_headers)

    async def transactions(self, request):
        await self._log(request)
        return web.json_response({"transactions": []})

    async def transaction(self, request):
        await self._log(request)
        return web.json_response({"transactionId": "t-1"}, status=201)

    async def coins(self, request):
        await self._log(request)
        return web.json_response({"success": True, "balance": 500})

    def app(self):
        app = web.Application()
        app.router.add_post("/api/wallet/create", self.create)
        app.router.add_post("/api/wallet/add-coins", self.coins)
        app.router.add_post("/api/wallet/update-coins", self.coins)
        app.router.add_get("/api/wallet/{wallet_id}/balance", self.balance)
        app.router.add_get("/api/wallet/{wallet_id}/transactions", self.transactions)
        app.router.add_post("/api/wallet/{wallet_id}/transaction", self.transaction)
        return app

    def paths(self):
        return [entry["path"] for entry in self.requests]


@pytest.fixture
def fake_api():
    """Fake wallet API state (not yet served)"""
    return FakeWalletApi()


@pytest_asyncio.fixture
async def wallet_server(fake_api):
    """Serve the fake wallet API on a random local port"""
    sockets = []

    def socket_factory(host, port, family):
        sock = get_port_socket(host, port, family)
        sockets.append(sock)
        return sock

    server = TestServer(fake_api.app(), socket_factory=socket_factory)
    await server.start_server()
    # Raise the listen backlog above aiohttp's default of 128 so that bursts
    # of concurrent connections are not delayed by SYN retransmits.
    for sock in sockets:
        sock.listen(1024)
    try:
        yield server
    finally:
        await server.close()


@pytest_asyncio.fixture
async def http_session():
    """aiohttp session with a short per-call timeout"""
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=0.3)) as session:
        yield session


@pytest.fixture
def base_url(wallet_server):
    """Root URL of the running fake wallet API"""
    return str(wallet_server.make_url("/")).rstrip("/")
