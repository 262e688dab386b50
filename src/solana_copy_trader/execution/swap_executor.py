"""Swap execution against the Jupiter aggregator."""

from __future__ import annotations

import base64
import uuid
from typing import Any, Callable, Dict, Optional, Protocol

import requests
from solders.transaction import VersionedTransaction

from ..config.settings import SwapConfig, get_app_config
from ..datalake.schemas import SwapRequest, SwapResult
from ..errors import SigningError, SwapRejectedError, TransientSwapError
from ..monitoring.logger import get_logger
from .solana_client import SolanaRpcClient
from .wallet import Wallet

_NO_ROUTE_MARKERS = ("COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "TOKEN_NOT_TRADABLE")


class SwapExecutor(Protocol):
    """Performs one swap for one signer.

    Raises :class:`TransientSwapError` for retryable failures,
    :class:`SwapRejectedError` for permanent provider rejections and
    :class:`SigningError` for unusable signing material.
    """

    def execute(self, wallet: Wallet, request: SwapRequest) -> SwapResult:
        ...


def to_base_units(amount: float, decimals: int) -> int:
    return int(round(amount * (10 ** decimals)))


def from_base_units(amount: int | str, decimals: int) -> float:
    return int(amount) / (10 ** decimals)


class JupiterSwapExecutor:
    """Quote, sign and broadcast a swap through Jupiter's v6 API."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        config: Optional[SwapConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        decimals_lookup: Optional[Callable[[str], int]] = None,
    ) -> None:
        self._rpc = rpc
        self._config = config or get_app_config().swap
        self._session = session or requests.Session()
        self._decimals = decimals_lookup or rpc.get_token_decimals
        self._logger = get_logger(__name__)

    def quote(self, request: SwapRequest) -> Dict[str, Any]:
        decimals_in = self._decimals(request.token_in)
        params = {
            "inputMint": request.token_in,
            "outputMint": request.token_out,
            "amount": str(to_base_units(request.amount_in, decimals_in)),
            "slippageBps": str(request.slippage_bps),
        }
        quote = self._request("GET", str(self._config.quote_url), params=params)
        if not quote.get("routePlan"):
            raise TransientSwapError(
                f"no route yet for {request.token_in} -> {request.token_out}"
            )
        return quote

    def execute(self, wallet: Wallet, request: SwapRequest) -> SwapResult:
        quote = self.quote(request)
        payload = {
            "quoteResponse": quote,
            "userPublicKey": wallet.address,
            "wrapAndUnwrapSol": self._config.wrap_and_unwrap_sol,
            "computeUnitPriceMicroLamports": self._config.compute_unit_price_micro_lamports,
        }
        swap = self._request("POST", str(self._config.swap_url), json=payload)
        encoded = swap.get("swapTransaction")
        if not encoded:
            raise SwapRejectedError("swap response did not include a transaction")
        signed = self._sign(wallet, encoded)
        signature = self._rpc.send_raw_transaction(signed)
        return self.build_result(signature, request, quote)

    def _sign(self, wallet: Wallet, encoded: str) -> bytes:
        try:
            unsigned = VersionedTransaction.from_bytes(base64.b64decode(encoded))
        except ValueError as exc:
            raise SwapRejectedError(f"undecodable swap transaction: {exc}") from exc
        try:
            signed = VersionedTransaction(unsigned.message, [wallet.keypair])
        except Exception as exc:  # noqa: BLE001 - solders signer errors have no common base
            raise SigningError(f"failed to sign swap for {wallet.address}: {exc}") from exc
        return bytes(signed)

    def build_result(self, signature: str, request: SwapRequest, quote: Dict[str, Any]) -> SwapResult:
        decimals_out = self._decimals(request.token_out)
        return SwapResult(
            signature=signature,
            amount_in=request.amount_in,
            amount_out=from_base_units(quote.get("outAmount", 0), decimals_out),
            price_impact_pct=float(quote.get("priceImpactPct") or 0.0),
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._session.request(method, url, timeout=self._config.http_timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientSwapError(f"{method} {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise SwapRejectedError(f"{method} {url} failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSwapError(f"{method} {url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            body = response.text or ""
            if any(marker in body for marker in _NO_ROUTE_MARKERS):
                raise TransientSwapError(f"no route yet: {body[:200]}")
            raise SwapRejectedError(f"{method} {url} returned HTTP {response.status_code}: {body[:200]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientSwapError(f"{method} {url} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise SwapRejectedError(f"{method} {url} returned unexpected payload")
        return data


class DryRunSwapExecutor:
    """Quotes real routes but never signs or broadcasts."""

    def __init__(self, quoter: JupiterSwapExecutor) -> None:
        self._quoter = quoter
        self._logger = get_logger(__name__)

    def execute(self, wallet: Wallet, request: SwapRequest) -> SwapResult:
        quote = self._quoter.quote(request)
        signature = f"dry-run-{uuid.uuid4().hex}"
        self._logger.info(
            "Dry-run swap %s -> %s for %s",
            request.token_in,
            request.token_out,
            wallet.address,
            extra={"amount_in": request.amount_in, "signature": signature},
        )
        return self._quoter.build_result(signature, request, quote)


__all__ = [
    "DryRunSwapExecutor",
    "JupiterSwapExecutor",
    "SwapExecutor",
    "from_base_units",
    "to_base_units",
]
