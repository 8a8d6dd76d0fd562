"""
JSON-RPC Client.

Lightweight alternative to web3.py: uses httpx for HTTP. Every call is
bounded by a per-call timeout. Idempotent reads are retried with linear
backoff on connectivity errors; transaction submission is attempted
exactly once.
"""

from __future__ import annotations

import itertools
import time
from typing import Any, Callable, Optional, Union

import httpx
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ..config import Config
from ..errors import (
    ConnectivityError,
    ProtocolError,
    RpcApplicationError,
    classify_node_error,
)
from ..logging import get_logger
from ..utils import from_data, from_quantity, to_data, to_quantity

logger = get_logger("pneuma.rpc")

BlockId = Union[int, str]


def _block_param(block: BlockId) -> str:
    return to_quantity(block) if isinstance(block, int) else block


class RpcClient:
    """
    Session-scoped JSON-RPC client.

    Args:
        rpc_url: HTTP(S) endpoint of the node
        timeout: Default per-call deadline in seconds
        retries: Maximum attempts for idempotent reads
        backoff: Linear backoff step in seconds (waits backoff, 2*backoff, ...)
        client: Pre-built httpx.Client (tests pass one with a MockTransport)
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        retries: int = 3,
        backoff: float = 0.5,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self._owns_client = client is None
        self._http = client or httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> "RpcClient":
        return cls(
            config.rpc_url,
            timeout=config.rpc_timeout,
            retries=config.rpc_retries,
            backoff=config.rpc_backoff,
            **kwargs,
        )

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ============ Transport ============

    def _post(self, method: str, params: list, timeout: Optional[float]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }

        try:
            response = self._http.post(self.rpc_url, json=payload, timeout=timeout or self.timeout)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"RPC {method} timed out: {e}", method=method) from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"RPC {method} request failed: {e}", method=method) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ConnectivityError(
                f"RPC {method} returned HTTP {response.status_code}", method=method
            )
        if response.status_code >= 400:
            raise ProtocolError(f"RPC {method} returned HTTP {response.status_code}", method=method)

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"RPC {method} returned invalid JSON: {e}", method=method) from e

        if not isinstance(data, dict):
            raise ProtocolError(f"RPC {method} returned a non-object response", method=method)

        if "error" in data:
            err = data["error"] or {}
            error = RpcApplicationError(
                f"RPC error: {err.get('message', 'unknown')}",
                method=method,
                code=err.get("code"),
                data=err.get("data"),
            )
            classified = classify_node_error(error)
            if classified is error:
                raise error
            raise classified from error

        if "result" not in data:
            raise ProtocolError(f"RPC {method} response has no result", method=method)

        return data["result"]

    def request(
        self,
        method: str,
        params: Optional[list] = None,
        idempotent: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make a JSON-RPC call.

        Args:
            method: RPC method name (e.g., "eth_call")
            params: RPC parameters
            idempotent: Retry on ConnectivityError when True
            timeout: Deadline for each attempt, defaults to the client timeout

        Returns:
            Result field from the RPC response

        Raises:
            ConnectivityError: Node unreachable after all attempts
            ProtocolError: Malformed response
            RpcApplicationError: Node returned an error object
            InsufficientFunds, NonceConflict: Node error classified as a domain fault
        """
        params = params or []
        if not idempotent:
            return self._post(method, params, timeout)

        retrying = Retrying(
            retry=retry_if_exception_type(ConnectivityError),
            wait=wait_incrementing(start=self.backoff, increment=self.backoff),
            stop=stop_after_attempt(self.retries),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Retrying %s after connectivity error (attempt %d/%d)",
                method,
                state.attempt_number,
                self.retries,
            ),
        )
        return retrying(self._post, method, params, timeout)

    # ============ Chain state ============

    def chain_id(self) -> int:
        return from_quantity(self.request("eth_chainId"))

    def block_number(self) -> int:
        return from_quantity(self.request("eth_blockNumber"))

    def get_transaction_count(self, address: str, block: BlockId = "pending") -> int:
        """Get the transaction count (next nonce) for an address."""
        return from_quantity(
            self.request("eth_getTransactionCount", [address, _block_param(block)])
        )

    def get_balance(self, address: str, block: BlockId = "latest") -> int:
        """Get native balance for an address, in base units."""
        return from_quantity(self.request("eth_getBalance", [address, _block_param(block)]))

    def get_block(self, block: BlockId = "latest", full: bool = False) -> Optional[dict]:
        """Get a block by number or tag. Returns None for unknown blocks."""
        return self.request("eth_getBlockByNumber", [_block_param(block), full])

    def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return self.request("eth_getTransactionByHash", [tx_hash])

    # ============ Fees ============

    def max_priority_fee(self) -> int:
        """Suggested priority fee (tip) per gas."""
        return from_quantity(self.request("eth_maxPriorityFeePerGas"))

    def gas_price(self) -> int:
        """Suggested legacy gas price per gas."""
        return from_quantity(self.request("eth_gasPrice"))

    def base_fee(self) -> Optional[int]:
        """Base fee of the latest block, or None on chains without a fee market."""
        header = self.get_block("latest")
        if header is None:
            return None
        raw = header.get("baseFeePerGas")
        return None if raw is None else from_quantity(raw)

    # ============ Execution ============

    def estimate_gas(self, tx: dict) -> int:
        return from_quantity(self.request("eth_estimateGas", [tx]))

    def call(self, tx: dict, block: BlockId = "latest") -> bytes:
        """Read-only contract call (eth_call). Returns raw return data."""
        return from_data(self.request("eth_call", [tx, _block_param(block)]))

    def send_raw_transaction(self, raw_tx: Union[bytes, str]) -> str:
        """
        Send a signed raw transaction.

        Never retried: resubmitting the same payload can look like a
        duplicate to the network.

        Returns:
            Transaction hash (0x-prefixed hex)
        """
        return self.request("eth_sendRawTransaction", [to_data(raw_tx)], idempotent=False)

    def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return self.request("eth_getTransactionReceipt", [tx_hash])

    def get_logs(self, log_filter: dict) -> list[dict]:
        result = self.request("eth_getLogs", [log_filter])
        if result is None:
            return []
        if not isinstance(result, list):
            raise ProtocolError("eth_getLogs returned a non-list result", method="eth_getLogs")
        return result
