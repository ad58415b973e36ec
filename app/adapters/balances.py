from __future__ import annotations

from decimal import Decimal

from app.core.errors import UpstreamError
from app.core.http import ResilientHTTPClient

_DECIMALS_SELECTOR = "0x313ce567"
_BALANCE_OF_SELECTOR = "0x70a08231"


def _hex_to_int(value) -> int:
    if value in (None, "0x", ""):
        return 0
    return int(str(value), 16)


def _scale(raw: int, decimals: int) -> Decimal:
    """Base units to whole tokens, exactly."""
    return Decimal(f"{raw}e-{decimals}")


class EvmBalanceAdapter:
    """Native and ERC-20 balances over plain JSON-RPC. All reads are retried by the HTTP client."""

    def __init__(self, http: ResilientHTTPClient, rpc_url: str, native_token_address: str) -> None:
        self.http = http
        self.rpc_url = rpc_url
        self.native_token_address = native_token_address.lower()
        self._decimals: dict[str, int] = {}

    async def _rpc(self, method: str, params: list, request_id: int = 1):
        resp = await self.http.post_json(
            self.rpc_url,
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            },
        )
        if not isinstance(resp, dict):
            raise UpstreamError(f"{method}: malformed rpc response")
        if resp.get("error"):
            err = resp["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise UpstreamError(f"{method}: {message}")
        return resp.get("result")

    async def get_native_balance(self, wallet_address: str) -> Decimal:
        wei = _hex_to_int(await self._rpc("eth_getBalance", [wallet_address, "latest"]))
        return _scale(wei, 18)

    async def token_decimals(self, token_address: str) -> int:
        key = token_address.lower()
        if key not in self._decimals:
            raw = await self._rpc("eth_call", [{"to": token_address, "data": _DECIMALS_SELECTOR}, "latest"], request_id=2)
            self._decimals[key] = _hex_to_int(raw) or 18
        return self._decimals[key]

    async def get_token_balance(self, wallet_address: str, token_address: str) -> Decimal:
        if token_address.lower() == self.native_token_address:
            return await self.get_native_balance(wallet_address)
        decimals = await self.token_decimals(token_address)
        data = _BALANCE_OF_SELECTOR + wallet_address.lower().removeprefix("0x").rjust(64, "0")
        raw = await self._rpc("eth_call", [{"to": token_address, "data": data}, "latest"], request_id=3)
        return _scale(_hex_to_int(raw), decimals)
