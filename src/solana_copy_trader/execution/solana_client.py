"""Solana RPC client wrapper with endpoint fallback and retries."""

from __future__ import annotations

from typing import List, Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..config.settings import RPCConfig, get_app_config
from ..errors import SwapRejectedError, TransientSwapError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import LAMPORTS_PER_SOL, SOL_MINT


class SolanaRpcClient:
    def __init__(self, config: Optional[RPCConfig] = None) -> None:
        self._config = config or get_app_config().rpc
        self._endpoints = [str(self._config.primary_url), *map(str, self._config.fallback_urls)]
        self._clients: List[Client] = [
            Client(endpoint, timeout=self._config.request_timeout) for endpoint in self._endpoints
        ]
        self._logger = get_logger(__name__)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception_type(SolanaRpcException),
        reraise=True,
    )
    def get_balance(self, address: str) -> float:
        """Native SOL balance of ``address``."""

        response = self._clients[0].get_balance(Pubkey.from_string(address))
        return response.value / LAMPORTS_PER_SOL

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception_type(SolanaRpcException),
        reraise=True,
    )
    def get_token_decimals(self, mint: str) -> int:
        if mint == SOL_MINT:
            return 9
        response = self._clients[0].get_token_supply(Pubkey.from_string(mint))
        return int(response.value.decimals)

    def send_raw_transaction(self, payload: bytes) -> str:
        """Submit a signed transaction, trying each endpoint in turn.

        Node-side rejections (preflight failures) are not retried on other
        endpoints; transport failures are, and surface as transient once every
        endpoint has failed.
        """

        opts = TxOpts(skip_preflight=False, preflight_commitment=self._config.commitment, max_retries=2)
        last_exc: Optional[Exception] = None
        for endpoint, client in zip(self._endpoints, self._clients):
            try:
                response = client.send_raw_transaction(payload, opts=opts)
                signature = str(response.value)
                self._logger.info("Submitted transaction %s via %s", signature, endpoint)
                return signature
            except RPCException as exc:
                METRICS.increment("rpc.send_rejected")
                raise SwapRejectedError(f"transaction rejected by {endpoint}: {exc}") from exc
            except SolanaRpcException as exc:
                last_exc = exc
                METRICS.increment("rpc.send_transport_error")
                self._logger.warning("Transaction submission failed on %s: %s", endpoint, exc)
        raise TransientSwapError(f"transaction submission failed on all endpoints: {last_exc}")


__all__ = ["SolanaRpcClient"]
