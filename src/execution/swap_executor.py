"""
Swap executor clients.
The engine hands over one leg at a time; executors either submit it or simulate it.
"""
import os
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Protocol

import requests
from loguru import logger

from src.errors import ExecutorFailure


@dataclass(frozen=True)
class SwapRequest:
    in_asset: str
    out_asset: str
    amount: float
    max_slippage_percent: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class SwapResult:
    tx_hash: Optional[str] = None
    simulated: bool = False

    @property
    def tx_status(self) -> str:
        return "simulated" if self.simulated else "submitted"


class SwapExecutor(Protocol):
    def swap(self, request: SwapRequest) -> SwapResult:
        ...


class DryRunSwapExecutor:
    """Never submits; every swap is reported as simulated."""

    def swap(self, request: SwapRequest) -> SwapResult:
        logger.info(
            f"[dry-run] swap {request.amount:.8f} {request.in_asset} -> {request.out_asset} "
            f"(max slippage {request.max_slippage_percent}%)"
        )
        return SwapResult(tx_hash=None, simulated=True)


class HttpSwapExecutor:
    """Submits swaps to the execution service (`POST /swap`). No retries."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def swap(self, request: SwapRequest) -> SwapResult:
        """
        Submit one swap.

        Raises:
            ExecutorFailure: transport error, non-2xx response or missing tx hash.
        """
        payload = {
            "inAsset": request.in_asset,
            "outAsset": request.out_asset,
            "amount": str(request.amount),
            "maxSlippagePercent": request.max_slippage_percent,
        }
        headers = {"X-API-Key": self.api_key} if self.api_key else {}

        try:
            response = self.session.post(
                f"{self.base_url}/swap", json=payload, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise ExecutorFailure(f"Swap request failed: {e}") from e

        if not response.ok:
            raise ExecutorFailure(f"Swap rejected ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise ExecutorFailure(f"Swap response is not JSON: {e}") from e

        tx_hash = (data or {}).get("txHash") or (data or {}).get("hash")
        if not tx_hash:
            raise ExecutorFailure(f"Swap response has no tx hash: {data!r}")

        logger.info(f"Swap submitted: {request.out_asset} tx={tx_hash}")
        return SwapResult(tx_hash=tx_hash, simulated=False)


def build_swap_executor(executor_config: Dict) -> SwapExecutor:
    """Create the executor selected by the `executor` config section."""
    mode = executor_config.get("mode", "dry_run")
    if mode == "http":
        return HttpSwapExecutor(
            base_url=executor_config.get("base_url", "http://localhost:3000"),
            api_key=os.getenv("EXECUTOR_API_KEY", ""),
            timeout=executor_config.get("timeout", 30),
        )
    if mode != "dry_run":
        logger.warning(f"Unknown executor mode '{mode}', using dry-run")
    return DryRunSwapExecutor()
