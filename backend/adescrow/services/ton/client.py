"""Async HTTP client for Toncenter API v3."""

import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from adescrow.core.config import settings

logger = logging.getLogger(__name__)


class TonClient:
    """Thin async wrapper around the Toncenter REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        network: str | None = None,
    ) -> None:
        base = base_url or settings.ton_api_base_url
        if (network or settings.ton_network) == "testnet" and "://toncenter.com" in base:
            base = base.replace("://toncenter.com", "://testnet.toncenter.com")
        self.base_url = base.rstrip("/")
        self.api_key = settings.ton_api_key if api_key is None else api_key

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Accept": "application/json"}
        if self.api_key:
            h["X-API-Key"] = self.api_key
        return h

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.5, min=1, max=10),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request against the API with tenacity retry."""
        req_timeout = kwargs.pop("timeout", 15)
        async with httpx.AsyncClient(timeout=req_timeout) as client:
            resp = await client.request(
                method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
            )
        resp.raise_for_status()
        return resp

    async def get_account_state(self, address: str) -> dict:
        """Account status (active/uninit/nonexist) and balance in nanoTON."""
        resp = await self._request("GET", "/account", params={"address": address})
        return resp.json()

    async def get_transactions(
        self, address: str, limit: int = 20, start_utime: int | None = None,
    ) -> list[dict]:
        """Most recent transactions of an account, newest first."""
        params: dict = {"account": address, "limit": limit, "sort": "desc"}
        if start_utime is not None:
            params["start_utime"] = start_utime
        resp = await self._request("GET", "/transactions", params=params)
        return resp.json().get("transactions", [])

    async def run_get_method(self, address: str, method: str, stack: list | None = None) -> dict:
        resp = await self._request(
            "POST",
            "/runGetMethod",
            json={"address": address, "method": method, "stack": stack or []},
        )
        return resp.json()

    async def send_boc(self, boc: str) -> dict:
        """Broadcast a serialized external message (base64 BOC)."""
        resp = await self._request("POST", "/message", json={"boc": boc}, timeout=30)
        return resp.json()

    async def get_wallet_seqno(self, address: str) -> int:
        """Current seqno of a wallet; an undeployed wallet starts at 0."""
        state = await self.get_account_state(address)
        if state.get("status") != "active":
            return 0
        result = await self.run_get_method(address, "seqno")
        stack = result.get("stack", [])
        if stack:
            return int(stack[0].get("value", "0"), 0)
        return 0
