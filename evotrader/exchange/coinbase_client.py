"""
Coinbase Advanced Trade client - balances and market orders for the live path
"""
import asyncio
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import jwt
from loguru import logger

from evotrader.errors import CollaboratorError
from evotrader.exchange.key_material import KeyMaterial, decode_private_key

ACCOUNTS_PATH = "/api/v3/brokerage/accounts"
ORDERS_PATH = "/api/v3/brokerage/orders"
JWT_TTL_SECONDS = 120


@dataclass
class CoinbaseAccount:
    currency: str
    available: float
    hold: float = 0.0
    uuid: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CoinbaseAccount":
        def amount(key: str) -> float:
            try:
                return float((data.get(key) or {}).get("value") or 0)
            except (TypeError, ValueError):
                return 0.0

        return cls(
            currency=str(data.get("currency") or ""),
            available=amount("available_balance"),
            hold=amount("hold"),
            uuid=data.get("uuid"),
        )


@dataclass
class OrderResponse:
    ok: bool
    http_status: int
    order_id: Optional[str] = None
    error: Optional[str] = None
    permission_denied: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


def build_jwt(key_name: str, key: KeyMaterial, method: str, host: str, path: str, now: Optional[int] = None) -> str:
    """Short-lived ES256 token bound to one ``METHOD host/path``."""
    issued = int(time.time()) if now is None else now
    claims = {
        "sub": key_name,
        "iss": "cdp",
        "nbf": issued,
        "exp": issued + JWT_TTL_SECONDS,
        "uri": f"{method} {host}{path}",
    }
    headers = {"kid": key_name, "nonce": secrets.token_hex(16), "typ": "JWT"}
    return jwt.encode(claims, key.private_key, algorithm="ES256", headers=headers)


def is_permission_error(status: int, data: Dict[str, Any]) -> bool:
    message = str(data.get("message") or "").lower()
    return status == 403 or data.get("error") == "PERMISSION_DENIED" or "permission" in message


class CoinbaseClient:
    """Signed REST calls; every request gets a fresh JWT and a total deadline."""

    def __init__(
        self,
        key_name: Optional[str],
        private_key: Optional[str],
        host: str = "api.coinbase.com",
        timeout_seconds: float = 10.0,
    ):
        self.key_name = key_name
        self._private_key_text = private_key
        self.host = host
        self.timeout_seconds = timeout_seconds
        self._key: Optional[KeyMaterial] = None

    @classmethod
    def from_settings(cls, coinbase_settings) -> "CoinbaseClient":
        secret = coinbase_settings.private_key.get_secret_value() if coinbase_settings.private_key else None
        return cls(
            key_name=coinbase_settings.api_key_name,
            private_key=secret,
            host=coinbase_settings.api_host,
            timeout_seconds=coinbase_settings.request_timeout_seconds,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.key_name and self._private_key_text)

    def signing_key(self) -> KeyMaterial:
        """Decoded once per client; raises KeyMaterialError on malformed input."""
        if self._key is None:
            self._key = decode_private_key(self._private_key_text or "")
            logger.debug(f"Coinbase signing key decoded ({self._key.variant.value})")
        return self._key

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Tuple[int, Dict[str, Any]]:
        token = build_jwt(self.key_name, self.signing_key(), method, self.host, path)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        url = f"https://{self.host}{path}"
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, json=payload, headers=headers) as response:
                    data = await response.json(content_type=None)
                    return response.status, data if isinstance(data, dict) else {}
        except asyncio.TimeoutError:
            raise CollaboratorError("coinbase", f"{method} {path} exceeded {self.timeout_seconds}s") from None
        except (aiohttp.ClientError, ValueError) as e:
            raise CollaboratorError("coinbase", f"{method} {path} failed: {e}") from e

    async def get_accounts(self) -> List[CoinbaseAccount]:
        status, data = await self._request("GET", ACCOUNTS_PATH)
        if status >= 400:
            raise CollaboratorError("coinbase", f"accounts http {status}: {data.get('message') or data.get('error')}")
        return [CoinbaseAccount.from_payload(a) for a in data.get("accounts") or []]

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quote_size: Optional[float] = None,
        base_size: Optional[float] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderResponse:
        """
        Immediate-or-cancel market order.

        Args:
            symbol: Product id, e.g. BTC-USD
            side: buy or sell
            quote_size: USD to spend (buys)
            base_size: Asset quantity (sells)
        """
        configuration: Dict[str, str] = {}
        if quote_size is not None:
            configuration["quote_size"] = f"{quote_size:.2f}"
        if base_size is not None:
            configuration["base_size"] = f"{base_size:.8f}".rstrip("0").rstrip(".")
        payload = {
            "client_order_id": client_order_id or f"live_{uuid.uuid4().hex[:16]}",
            "product_id": symbol,
            "side": side.upper(),
            "order_configuration": {"market_market_ioc": configuration},
        }

        status, data = await self._request("POST", ORDERS_PATH, payload)
        success = status < 400 and data.get("success", True) is not False
        if not success:
            error = data.get("message") or data.get("error") or (data.get("error_response") or {}).get("message")
            logger.error(f"Coinbase rejected {side} {symbol}: http {status} {error}")
            return OrderResponse(
                ok=False,
                http_status=status,
                error=str(error or f"http_{status}"),
                permission_denied=is_permission_error(status, data),
                raw=data,
            )

        order_id = (data.get("success_response") or {}).get("order_id") or data.get("order_id")
        logger.info(f"Coinbase accepted {side} {symbol}: order {order_id}")
        return OrderResponse(ok=True, http_status=status, order_id=order_id, raw=data)
