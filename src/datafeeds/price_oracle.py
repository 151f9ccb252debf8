"""
Price oracle clients.
HTTP client with retry/backoff plus a deterministic mock for development.
"""
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import requests
from loguru import logger

from src.errors import OracleUnavailable
from src.utils.windows import normalize_window


@dataclass(frozen=True)
class PriceQuote:
    asset_id: str
    price: float
    reference_price: Optional[float] = None
    window: Optional[str] = None
    source: str = "unknown"


class PriceOracle(Protocol):
    def get_price(self, asset_id: str, window: Optional[str] = None) -> PriceQuote:
        ...


def _positive_float(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class HttpPriceOracle:
    """Client for the price API (`GET /api/price?coin=...&window=...`) with retry logic."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        max_retries: int = 3,
        timeout: int = 10,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.session = session or requests.Session()

    def _retry_with_backoff(self, func, *args, **kwargs):
        """Execute function with exponential backoff on failure."""
        for attempt in range(self.max_retries):
            try:
                return func(*args, **kwargs)
            except (requests.exceptions.RequestException, ValueError) as e:
                if attempt == self.max_retries - 1:
                    logger.error(f"Price API failed after {self.max_retries} attempts: {e}")
                    raise OracleUnavailable(str(e)) from e

                # Exponential backoff: 1s, 2s, 4s
                backoff = 2 ** attempt
                logger.warning(f"Price API attempt {attempt + 1} failed, retrying in {backoff}s: {e}")
                time.sleep(backoff)

    def get_price(self, asset_id: str, window: Optional[str] = None) -> PriceQuote:
        """
        Fetch latest price and, when a window is given, the reference price.

        Returns:
            PriceQuote; reference_price is None when the API has none for the window.

        Raises:
            OracleUnavailable: transport failure or unusable price.
        """
        def _fetch():
            params = {"coin": asset_id}
            if window:
                params["window"] = window
            headers = {"X-API-Key": self.api_key} if self.api_key else {}
            response = self.session.get(
                f"{self.base_url}/api/price", params=params, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        data = self._retry_with_backoff(_fetch) or {}
        price = _positive_float(data.get("price"))
        if price is None:
            raise OracleUnavailable(f"No usable price for {asset_id}: {data.get('price')!r}")

        return PriceQuote(
            asset_id=asset_id,
            price=price,
            reference_price=_positive_float(data.get("prevPrice")),
            window=window,
            source=data.get("source", "http"),
        )


def _hash(text: str, factor: int) -> int:
    h = 0
    for ch in text:
        h = (h * factor + ord(ch)) & 0xFFFFFFFF
    return h


class MockPriceOracle:
    """
    Deterministic prices for development and dry runs.
    Price is 5..500 from a hash of the asset id; the window delta is in [-15%, +15%].
    """

    def __init__(self, overrides: Optional[Dict[str, float]] = None):
        self.overrides = dict(overrides or {})

    @staticmethod
    def mock_price(asset_id: str) -> float:
        return round(5 + _hash(asset_id, 31) % 495, 2)

    @staticmethod
    def window_delta_pct(asset_id: str, window: str) -> float:
        h = _hash(f"{asset_id}:{window}", 33)
        sign = 1 if h & 1 else -1
        return sign * (h % 1500) / 100

    def get_price(self, asset_id: str, window: Optional[str] = None) -> PriceQuote:
        price = self.overrides.get(asset_id, self.mock_price(asset_id))
        reference = None
        if window:
            pct = self.window_delta_pct(asset_id, normalize_window(window))
            reference = round(price / (1 + pct / 100), 6)
        return PriceQuote(asset_id=asset_id, price=price, reference_price=reference,
                          window=window, source="mock")


def build_price_oracle(oracle_config: Dict) -> PriceOracle:
    """Create the oracle selected by the `oracle` config section."""
    provider = oracle_config.get("provider", "mock")
    if provider == "http":
        return HttpPriceOracle(
            base_url=oracle_config.get("base_url", "http://localhost:3000"),
            api_key=os.getenv("ORACLE_API_KEY", ""),
            max_retries=oracle_config.get("max_retries", 3),
            timeout=oracle_config.get("timeout", 10),
        )
    if provider != "mock":
        logger.warning(f"Unknown oracle provider '{provider}', using mock prices")
    return MockPriceOracle()
