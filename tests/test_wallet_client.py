"""Tests for wallet API request building and response classification"""
import json

import pytest

from wallet_client import (
    WALLET_ID_HEADER,
    Classification,
    Endpoint,
    RequestOutcome,
    WalletApiClient,
    WalletHandle,
    classify,
)


class TestClassify:
    @pytest.mark.parametrize("endpoint", list(Endpoint))
    def test_429_is_always_rate_limited(self, endpoint):
        body = json.dumps({"walletId": "x", "balance": 1, "transactions": [], "transactionId": "t"})
        classification, _ = classify(endpoint, 429, body)
        assert classification is Classification.RATE_LIMITED

    def test_rate_limit_text_in_body(self):
        classification, _ = classify(Endpoint.GET_BALANCE, 503, "Too many requests: rate limit exceeded")
        assert classification is Classification.RATE_LIMITED

    def test_rate_limit_remaining_header(self):
        classification, _ = classify(
            Endpoint.GET_BALANCE, 200, '{"balance": 5}', {"x-ratelimit-remaining": "0"}
        )
        assert classification is Classification.RATE_LIMITED

    def test_nonzero_remaining_header_is_not_rate_limited(self):
        classification, _ = classify(
            Endpoint.GET_BALANCE, 200, '{"balance": 5}', {"X-RateLimit-Remaining": "10"}
        )
        assert classification is Classification.SUCCESS

    @pytest.mark.parametrize(
        "endpoint,status,body",
        [
            (Endpoint.CREATE_WALLET, 201, {"id": "w-1"}),
            (Endpoint.CREATE_WALLET, 200, {"walletId": "w-2"}),
            (Endpoint.GET_BALANCE, 200, {"balance": 0}),
            (Endpoint.LIST_TRANSACTIONS, 200, {"transactions": []}),
            (Endpoint.CREATE_TRANSACTION, 201, {"transactionId": "t-1"}),
            (Endpoint.ADD_COINS, 200, {"success": True}),
            (Endpoint.UPDATE_COINS, 201, {"balance": 900}),
        ],
    )
    def test_expected_field_present_is_success(self, endpoint, status, body):
        classification, data = classify(endpoint, status, json.dumps(body))
        assert classification is Classification.SUCCESS
        assert data == body

    def test_reads_do_not_accept_201(self):
        classification, _ = classify(Endpoint.GET_BALANCE, 201, '{"balance": 1}')
        assert classification is Classification.FAILURE

    def test_missing_expected_field_is_failure(self):
        classification, data = classify(Endpoint.GET_BALANCE, 200, '{"amount": 1}')
        assert classification is Classification.FAILURE
        assert data == {"amount": 1}

    @pytest.mark.parametrize("body", ["{not json", "", "<html>oops</html>"])
    def test_unparseable_body_is_failure(self, body):
        classification, data = classify(Endpoint.CREATE_WALLET, 201, body)
        assert classification is Classification.FAILURE
        assert data is None

    def test_json_array_is_failure(self):
        classification, _ = classify(Endpoint.LIST_TRANSACTIONS, 200, "[]")
        assert classification is Classification.FAILURE

    def test_server_error_is_failure(self):
        classification, _ = classify(Endpoint.GET_BALANCE, 500, '{"balance": 1}')
        assert classification is Classification.FAILURE


class TestWalletHandle:
    def test_uses_created_id_verbatim(self):
        outcome = RequestOutcome(Endpoint.CREATE_WALLET, 201, 3.0, Classification.SUCCESS, data={"id": "w-1"})
        handle = WalletHandle.from_outcome(outcome, "1001")
        assert handle.id == "w-1"
        assert not handle.is_fallback
        assert handle.created_at.tzinfo is not None

    def test_prefers_wallet_id_field(self):
        outcome = RequestOutcome(
            Endpoint.CREATE_WALLET, 200, 3.0, Classification.SUCCESS, data={"walletId": "abc", "id": 7}
        )
        assert WalletHandle.from_outcome(outcome, "1001").id == "abc"

    def test_falls_back_on_failure(self):
        outcome = RequestOutcome(Endpoint.CREATE_WALLET, 0, 5000.0, Classification.FAILURE, error="timeout")
        handle = WalletHandle.from_outcome(outcome, "1001")
        assert handle.id == "1001"
        assert handle.is_fallback

    def test_falls_back_when_rate_limited(self):
        outcome = RequestOutcome(Endpoint.CREATE_WALLET, 429, 1.0, Classification.RATE_LIMITED)
        assert WalletHandle.from_outcome(outcome, "1001").is_fallback


class TestBuildRequest:
    @pytest.fixture
    def client(self):
        return WalletApiClient(session=None, base_url="http://wallet.test/", api_path="api/")

    def test_create_wallet(self, client):
        method, url, kwargs = client.build_request(Endpoint.CREATE_WALLET, owner_key="pk-1", coins=42)
        assert method == "POST"
        assert url == "http://wallet.test/api/wallet/create"
        assert kwargs["json"] == {"publicKey": "pk-1", "coins": 42}
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert WALLET_ID_HEADER not in kwargs["headers"]

    def test_wallet_id_in_body_and_single_header(self, client):
        method, url, kwargs = client.build_request(Endpoint.ADD_COINS, "w-1", amount=100)
        assert (method, url) == ("POST", "http://wallet.test/api/wallet/add-coins")
        assert kwargs["json"] == {"walletId": "w-1", "amount": 100}
        wallet_headers = [name for name in kwargs["headers"] if name.lower() == WALLET_ID_HEADER.lower()]
        assert wallet_headers == [WALLET_ID_HEADER]
        assert kwargs["headers"][WALLET_ID_HEADER] == "w-1"
        assert "params" not in kwargs

    def test_path_routes(self, client):
        _, url, kwargs = client.build_request(Endpoint.LIST_TRANSACTIONS, "w 1/x", limit=5)
        assert url == "http://wallet.test/api/wallet/w%201%2Fx/transactions"
        assert kwargs["params"] == {"limit": "5"}

        method, url, kwargs = client.build_request(
            Endpoint.CREATE_TRANSACTION, "w-1", amount=10, type="withdraw", description="d"
        )
        assert (method, url) == ("POST", "http://wallet.test/api/wallet/w-1/transaction")
        assert kwargs["json"]["type"] == "withdraw"
        assert kwargs["json"]["walletId"] == "w-1"

    def test_wallet_routes_need_an_id(self, client):
        with pytest.raises(ValueError):
            client.build_request(Endpoint.GET_BALANCE)

    def test_extra_headers_are_merged(self):
        client = WalletApiClient(None, "http://wallet.test", headers={"Authorization": "Bearer t"})
        _, _, kwargs = client.build_request(Endpoint.GET_BALANCE, "w-1")
        assert kwargs["headers"]["Authorization"] == "Bearer t"

    def test_custom_wallet_header_replaces_configured_duplicate(self):
        client = WalletApiClient(
            None, "http://wallet.test", headers={"x-wallet": "stale"}, wallet_header="X-Wallet"
        )
        _, _, kwargs = client.build_request(Endpoint.GET_BALANCE, "w-9")
        matching = {k: v for k, v in kwargs["headers"].items() if k.lower() == "x-wallet"}
        assert matching == {"X-Wallet": "w-9"}


class TestAgainstServer:
    @pytest.mark.asyncio
    async def test_create_wallet_success(self, fake_api, base_url, http_session):
        client = WalletApiClient(http_session, base_url)
        outcome = await client.create_wallet("pk-1", 10)

        assert outcome.classification is Classification.SUCCESS
        assert outcome.status_code == 201
        assert outcome.data == {"id": "w-1"}
        assert outcome.latency_ms > 0
        assert fake_api.requests[0]["json"] == {"publicKey": "pk-1", "coins": 10}

    @pytest.mark.asyncio
    async def test_rate_limit_header_from_server(self, fake_api, base_url, http_session):
        fake_api.balance_headers = {"X-RateLimit-Remaining": "0"}
        client = WalletApiClient(http_session, base_url)
        outcome = await client.get_balance("w-1")
        assert outcome.classification is Classification.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_timeout_becomes_failure(self, fake_api, base_url, http_session):
        fake_api.create_delay = 1.0
        client = WalletApiClient(http_session, base_url)
        outcome = await client.create_wallet("pk-1", 10)

        assert outcome.classification is Classification.FAILURE
        assert outcome.status_code == 0
        assert outcome.error == "timeout"

    @pytest.mark.asyncio
    async def test_connection_refused_becomes_failure(self, http_session):
        client = WalletApiClient(http_session, "http://127.0.0.1:1")
        outcome = await client.get_balance("w-1")

        assert outcome.classification is Classification.FAILURE
        assert outcome.status_code == 0
        assert outcome.error is not None

    @pytest.mark.asyncio
    async def test_unknown_route_is_failure(self, base_url, http_session):
        client = WalletApiClient(http_session, base_url, api_path="/v2")
        outcome = await client.get_balance("w-1")
        assert outcome.status_code == 404
        assert outcome.classification is Classification.FAILURE
