"""
favfund Core: Exchange Connector (Kalshi)

Signed REST client for the Kalshi trade API.

Requests are signed with RSA-PSS/SHA256 over
``timestamp_ms + METHOD + /trade-api/v2/<path>`` (query string excluded) and
sent sequentially with a minimum interval between calls. List endpoints are
paginated with a cursor loop that stops when the exchange returns no cursor.
"""

import base64
import os
import random
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import logging

import requests
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from core.exceptions import ExchangeError
from core.snapshot import (
    Balance,
    ExchangeOrder,
    Fill,
    MarketQuote,
    Orderbook,
    Position,
    Settlement,
    normalize_balance,
    normalize_fill,
    normalize_market,
    normalize_order,
    normalize_orderbook,
    normalize_positions,
    normalize_settlement,
    normalize_side,
)

logger = logging.getLogger(__name__)

KALSHI_BASE = "https://api.elections.kalshi.com/trade-api/v2"
KALSHI_DEMO_BASE = "https://demo-api.kalshi.co/trade-api/v2"
PAGE_LIMIT = 100


def _parse_private_key(raw: str) -> str:
    """Accept PEM text with literal ``\\n`` escapes (as stored in env vars)."""
    return raw.replace("\\n", "\n").strip()


class KalshiExchange:
    """
    Kalshi trade API connector.

    Supports:
    - Account data (balance, positions, orders, fills, settlements)
    - Market data (market quote, order book)
    - Order execution (place, cancel)
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        private_key_pem: Optional[str] = None,
        private_key_path: Optional[str] = None,
        base_url: Optional[str] = None,
        read_only: bool = True,
        min_interval: float = 0.1,
        max_retries: int = 3,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.key_id = key_id or os.getenv("KALSHI_API_KEY_ID", "")
        self.base_url = (base_url or os.getenv("KALSHI_BASE_URL", KALSHI_BASE)).rstrip("/")
        self._path_prefix = urlparse(self.base_url).path.rstrip("/")
        self.read_only = read_only
        self.max_retries = max(1, int(max_retries))
        self.timeout = timeout

        pem = private_key_pem or os.getenv("KALSHI_PRIVATE_KEY", "")
        key_path = private_key_path or os.getenv("KALSHI_PRIVATE_KEY_PATH")
        if not pem and key_path:
            with open(key_path, "r", encoding="utf-8") as f:
                pem = f.read()
        self._key = load_pem_private_key(_parse_private_key(pem).encode("utf-8"), password=None) if pem else None

        self._session = session or requests.Session()

        # Rate limiting
        self._last_call = 0.0
        self._min_interval = min_interval

        logger.info(
            "Initialized KalshiExchange (read_only=%s, base=%s, signed=%s)",
            read_only, self.base_url, self._key is not None,
        )

    def _rate_limit(self):
        """Fixed minimum delay between consecutive calls"""
        elapsed = time.monotonic() - self._last_call
        if elapsed < self._min_interval:
            time.sleep(self._min_interval - elapsed)
        self._last_call = time.monotonic()

    def _sign(self, message: str) -> str:
        signature = self._key.sign(
            message.encode("utf-8"),
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("ascii")

    def _headers(self, method: str, endpoint: str) -> Dict[str, str]:
        """Generate signed headers for authenticated requests"""
        if not self.key_id or self._key is None:
            raise ValueError("KALSHI_API_KEY_ID and a private key are required for authenticated requests")

        ts = str(int(time.time() * 1000))
        path = self._path_prefix + endpoint.split("?")[0]
        return {
            "Content-Type": "application/json",
            "KALSHI-ACCESS-KEY": self.key_id,
            "KALSHI-ACCESS-TIMESTAMP": ts,
            "KALSHI-ACCESS-SIGNATURE": self._sign(ts + method.upper() + path),
        }

    def _req(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict] = None,
        query: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> dict:
        """
        Make HTTP request to the Kalshi API with exponential backoff.

        Retries on:
        - 429 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Does NOT retry on:
        - 4xx (except 429), raised as ExchangeError
        """
        url = self.base_url + endpoint
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            self._rate_limit()
            try:
                headers = self._headers(method, endpoint) if authenticated else {"Content-Type": "application/json"}
                response = self._session.request(
                    method,
                    url,
                    headers=headers,
                    params=query,
                    json=body,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                if not response.content:
                    return {}
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code

                if 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug("Kalshi API 404: %s - %s", endpoint, e.response.text)
                    else:
                        logger.error("Kalshi API client error: %s - %s", status_code, e.response.text)
                    raise ExchangeError(
                        f"Kalshi API error {status_code} on {method} {endpoint}",
                        status_code=status_code,
                        body=e.response.text,
                    ) from e

                if status_code == 429:
                    logger.warning("Rate limited (429) on %s, attempt %d/%d", endpoint, attempt + 1, self.max_retries)
                else:
                    logger.warning("Server error (%s) on %s, attempt %d/%d", status_code, endpoint, attempt + 1, self.max_retries)
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning("Network error on %s: %s, attempt %d/%d", endpoint, e, attempt + 1, self.max_retries)
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info("Retrying in %.1fs...", backoff)
                time.sleep(backoff)

        logger.error("All %d retries exhausted for %s", self.max_retries, endpoint)
        raise last_exception

    def _paginate(self, endpoint: str, key: str, query: Optional[Dict[str, Any]] = None) -> List[dict]:
        """Follow the cursor until the exchange stops returning one"""
        items: List[dict] = []
        cursor: Optional[str] = None
        pages = 0
        while True:
            params = dict(query or {})
            params["limit"] = PAGE_LIMIT
            if cursor:
                params["cursor"] = cursor
            data = self._req("GET", endpoint, query=params)
            items.extend(data.get(key) or [])
            pages += 1
            cursor = data.get("cursor") or None
            if not cursor:
                break
        logger.debug("Fetched %d %s across %d pages", len(items), key, pages)
        return items

    # Account data

    def get_balance(self) -> Balance:
        return normalize_balance(self._req("GET", "/portfolio/balance"))

    def get_positions(self) -> List[Position]:
        """Open positions; zero-contract rows are dropped"""
        raw = self._paginate("/portfolio/positions", "market_positions")
        return normalize_positions(raw)

    def list_orders(self, status: Optional[str] = None, market_id: Optional[str] = None) -> List[ExchangeOrder]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if market_id:
            query["ticker"] = market_id
        return [normalize_order(raw) for raw in self._paginate("/portfolio/orders", "orders", query)]

    def list_fills(self) -> List[Fill]:
        fills = [normalize_fill(raw) for raw in self._paginate("/portfolio/fills", "fills")]
        logger.info("Fetched %d fills", len(fills))
        return fills

    def list_settlements(self) -> List[Settlement]:
        return [normalize_settlement(raw) for raw in self._paginate("/portfolio/settlements", "settlements")]

    # Market data

    def get_market(self, market_id: str) -> MarketQuote:
        data = self._req("GET", f"/markets/{market_id}")
        market = data.get("market")
        if not market:
            raise ExchangeError(f"Market {market_id} returned no data")
        return normalize_market(market)

    def get_orderbook(self, market_id: str, depth: int = 10) -> Orderbook:
        query = {"depth": depth} if depth > 0 else None
        return normalize_orderbook(market_id, self._req("GET", f"/markets/{market_id}/orderbook", query=query))

    # Execution

    def place_order(
        self,
        market_id: str,
        side: str,
        count: int,
        client_order_id: str,
        action: str = "buy",
        order_type: str = "limit",
        price: Optional[int] = None,
    ) -> ExchangeOrder:
        """
        Submit an order. ``client_order_id`` makes retries idempotent on the exchange side.
        """
        if self.read_only:
            raise ExchangeError("Exchange client is read-only; refusing to place order")
        side = normalize_side(side)
        if count <= 0:
            raise ValueError("Order count must be positive")

        body: Dict[str, Any] = {
            "ticker": market_id,
            "action": action,
            "side": side,
            "count": int(count),
            "type": order_type,
            "client_order_id": client_order_id,
        }
        if order_type == "limit":
            if price is None or not 1 <= price <= 99:
                raise ValueError(f"Limit price must be 1-99 cents, got {price}")
            body["yes_price" if side == "yes" else "no_price"] = int(price)

        logger.info("Placing %s %s %dx %s %s @ %s (%s)", order_type, action, count, side, market_id, price, client_order_id)
        data = self._req("POST", "/portfolio/orders", body=body)
        order = data.get("order")
        if not order:
            raise ExchangeError(f"Order submission for {market_id} returned no order")
        return normalize_order(order)

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """
        Cancel a resting order.

        Returns:
            {"success": bool, "not_found": bool, "error": Optional[str]}
        """
        if self.read_only:
            return {"success": False, "not_found": False, "error": "read_only"}
        try:
            self._req("DELETE", f"/portfolio/orders/{order_id}")
            logger.info("Cancelled order %s", order_id)
            return {"success": True, "not_found": False, "error": None}
        except ExchangeError as e:
            if e.is_not_found:
                logger.info("Cancel for %s: order not found on exchange", order_id)
                return {"success": False, "not_found": True, "error": str(e)}
            logger.warning("Cancel for %s failed: %s", order_id, e)
            return {"success": False, "not_found": False, "error": str(e)}
        except requests.exceptions.RequestException as e:
            logger.warning("Cancel for %s failed after retries: %s", order_id, e)
            return {"success": False, "not_found": False, "error": str(e)}


def get_exchange(read_only: bool = True, **kwargs) -> KalshiExchange:
    """Build an exchange client from environment credentials"""
    return KalshiExchange(read_only=read_only, **kwargs)
