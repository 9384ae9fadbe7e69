"""HTTP client for the wallet API under test.

Every call returns a :class:`RequestOutcome`; transport failures and
malformed responses are classified as ``FAILURE`` instead of raised.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import aiohttp

LOGGER = logging.getLogger("wallet_load.client")

RATE_LIMIT_HEADER = "X-RateLimit-Remaining"
WALLET_ID_HEADER = "X-Wallet-Id"
RATE_LIMIT_MARKER = "rate limit"


class Endpoint(str, enum.Enum):
    CREATE_WALLET = "create_wallet"
    GET_BALANCE = "get_balance"
    LIST_TRANSACTIONS = "list_transactions"
    ADD_COINS = "add_coins"
    UPDATE_COINS = "update_coins"
    CREATE_TRANSACTION = "create_transaction"


class Classification(str, enum.Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILURE = "failure"


_READ_OK = frozenset({200})
_WRITE_OK = frozenset({200, 201})

SUCCESS_STATUSES: Dict[Endpoint, frozenset] = {
    Endpoint.CREATE_WALLET: _WRITE_OK,
    Endpoint.GET_BALANCE: _READ_OK,
    Endpoint.LIST_TRANSACTIONS: _READ_OK,
    Endpoint.ADD_COINS: _WRITE_OK,
    Endpoint.UPDATE_COINS: _WRITE_OK,
    Endpoint.CREATE_TRANSACTION: _WRITE_OK,
}

# Any one of the listed fields satisfies the response check.
EXPECTED_FIELDS: Dict[Endpoint, Tuple[str, ...]] = {
    Endpoint.CREATE_WALLET: ("walletId", "id"),
    Endpoint.GET_BALANCE: ("balance",),
    Endpoint.LIST_TRANSACTIONS: ("transactions",),
    Endpoint.ADD_COINS: ("balance", "success"),
    Endpoint.UPDATE_COINS: ("balance", "success"),
    Endpoint.CREATE_TRANSACTION: ("transactionId", "id"),
}


@dataclass(frozen=True)
class RequestOutcome:
    endpoint: Endpoint
    status_code: int
    latency_ms: float
    classification: Classification
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.classification is Classification.SUCCESS

    def value_of(self, *names: str) -> Any:
        """Return the first present, non-null field of a JSON object body."""

        if not isinstance(self.data, dict):
            return None
        for name in names:
            if self.data.get(name) is not None:
                return self.data[name]
        return None


@dataclass(frozen=True)
class WalletHandle:
    id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_fallback: bool = False

    @classmethod
    def from_outcome(cls, outcome: RequestOutcome, fallback_id: str) -> "WalletHandle":
        wallet_id = outcome.value_of(*EXPECTED_FIELDS[Endpoint.CREATE_WALLET]) if outcome.ok else None
        if wallet_id is None:
            return cls(id=fallback_id, is_fallback=True)
        return cls(id=str(wallet_id))


def is_rate_limited(status: int, body_text: str, headers: Optional[Mapping[str, str]]) -> bool:
    if status == 429:
        return True
    if body_text and RATE_LIMIT_MARKER in body_text:
        return True
    for name, value in (headers or {}).items():
        if name.lower() == RATE_LIMIT_HEADER.lower() and str(value).strip() == "0":
            return True
    return False


def classify(
    endpoint: Endpoint,
    status: int,
    body_text: str,
    headers: Optional[Mapping[str, str]] = None,
) -> Tuple[Classification, Any]:
    """Classify one response and return it with the parsed JSON body (if any)."""

    if is_rate_limited(status, body_text, headers):
        return Classification.RATE_LIMITED, None
    if status not in SUCCESS_STATUSES[endpoint]:
        return Classification.FAILURE, None

    try:
        data = json.loads(body_text)
    except ValueError:
        LOGGER.debug("%s returned %s with a body that is not valid JSON", endpoint.value, status)
        return Classification.FAILURE, None

    if isinstance(data, dict) and any(data.get(name) is not None for name in EXPECTED_FIELDS[endpoint]):
        return Classification.SUCCESS, data
    return Classification.FAILURE, data


class WalletApiClient:
    """Builds and sends wallet API requests on a shared aiohttp session."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        api_path: str = "/api",
        headers: Optional[Dict[str, str]] = None,
        wallet_header: str = WALLET_ID_HEADER,
    ) -> None:
        self.session = session
        self.wallet_header = wallet_header
        self.base_url = base_url.rstrip("/")
        self.api_path = "/" + api_path.strip("/") if api_path.strip("/") else ""
        self.headers = {"Content-Type": "application/json", "Accept": "application/json"}
        self.headers.update(headers or {})

    def url(self, path: str) -> str:
        return f"{self.base_url}{self.api_path}{path}"

    def _wallet_path(self, wallet_id: str, suffix: str) -> str:
        return f"/wallet/{quote(wallet_id, safe='')}/{suffix}"

    def _headers(self, wallet_id: Optional[str]) -> Dict[str, str]:
        headers = {k: v for k, v in self.headers.items() if k.lower() != self.wallet_header.lower()}
        if wallet_id is not None:
            headers[self.wallet_header] = wallet_id
        return headers

    def build_request(
        self,
        endpoint: Endpoint,
        wallet_id: Optional[str] = None,
        **fields: Any,
    ) -> Tuple[str, str, Dict[str, Any]]:
        """Return ``(method, url, request kwargs)`` for an endpoint."""

        if endpoint is Endpoint.CREATE_WALLET:
            body = {"publicKey": fields["owner_key"], "coins": fields["coins"]}
            return "POST", self.url("/wallet/create"), {"json": body, "headers": self._headers(None)}

        if wallet_id is None:
            raise ValueError(f"{endpoint.value} requires a wallet id")
        headers = self._headers(wallet_id)

        if endpoint is Endpoint.GET_BALANCE:
            return "GET", self.url(self._wallet_path(wallet_id, "balance")), {"headers": headers}

        if endpoint is Endpoint.LIST_TRANSACTIONS:
            params = {"limit": str(fields.get("limit", 10))}
            url = self.url(self._wallet_path(wallet_id, "transactions"))
            return "GET", url, {"params": params, "headers": headers}

        if endpoint is Endpoint.CREATE_TRANSACTION:
            body = {
                "walletId": wallet_id,
                "amount": fields["amount"],
                "type": fields["type"],
                "description": fields["description"],
            }
            url = self.url(self._wallet_path(wallet_id, "transaction"))
            return "POST", url, {"json": body, "headers": headers}

        if endpoint in (Endpoint.ADD_COINS, Endpoint.UPDATE_COINS):
            path = "/wallet/add-coins" if endpoint is Endpoint.ADD_COINS else "/wallet/update-coins"
            body = {"walletId": wallet_id, "amount": fields["amount"]}
            return "POST", self.url(path), {"json": body, "headers": headers}

        raise ValueError(f"Unknown endpoint '{endpoint}'")

    async def send(self, endpoint: Endpoint, wallet_id: Optional[str] = None, **fields: Any) -> RequestOutcome:
        method, url, kwargs = self.build_request(endpoint, wallet_id, **fields)
        started = time.perf_counter()
        try:
            async with self.session.request(method, url, **kwargs) as response:
                body_text = await response.text(errors="replace")
                latency_ms = (time.perf_counter() - started) * 1000
                status = response.status
                headers = response.headers
        except asyncio.TimeoutError:
            return self._transport_failure(endpoint, started, "timeout")
        except aiohttp.ClientError as exc:
            return self._transport_failure(endpoint, started, exc.__class__.__name__)

        classification, data = classify(endpoint, status, body_text, headers)
        if classification is Classification.RATE_LIMITED:
            LOGGER.warning("Rate limit detected on %s: %s %s", endpoint.value, status, body_text[:200])
        LOGGER.debug("%s %s -> %d %.1fms %s", method, url, status, latency_ms, classification.value)
        return RequestOutcome(endpoint, status, latency_ms, classification, data=data)

    def _transport_failure(self, endpoint: Endpoint, started: float, label: str) -> RequestOutcome:
        latency_ms = (time.perf_counter() - started) * 1000
        LOGGER.debug("%s transport error after %.1fms: %s", endpoint.value, latency_ms, label)
        return RequestOutcome(endpoint, 0, latency_ms, Classification.FAILURE, error=label)

    async def create_wallet(self, owner_key: str, coins: int) -> RequestOutcome:
        return await self.send(Endpoint.CREATE_WALLET, owner_key=owner_key, coins=coins)

    async def get_balance(self, wallet_id: str) -> RequestOutcome:
        return await self.send(Endpoint.GET_BALANCE, wallet_id)

    async def list_transactions(self, wallet_id: str, limit: int = 10) -> RequestOutcome:
        return await self.send(Endpoint.LIST_TRANSACTIONS, wallet_id, limit=limit)

    async def add_coins(self, wallet_id: str, amount: int) -> RequestOutcome:
        return await self.send(Endpoint.ADD_COINS, wallet_id, amount=amount)

    async def update_coins(self, wallet_id: str, amount: int) -> RequestOutcome:
        return await self.send(Endpoint.UPDATE_COINS, wallet_id, amount=amount)

    async def create_transaction(
        self,
        wallet_id: str,
        amount: int,
        transaction_type: str = "deposit",
        description: Optional[str] = None,
    ) -> RequestOutcome:
        return await self.send(
            Endpoint.CREATE_TRANSACTION,
            wallet_id,
            amount=amount,
            type=transaction_type,
            description=description or f"Load test {transaction_type} of {amount}",
        )
