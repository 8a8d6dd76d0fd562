"""
Submission & Confirmation - Broadcast a signed transaction and wait for
its receipt.

Built -> Signed -> Broadcast -> Pending -> Mined(Success|Failure) | TimedOut

A timeout never concludes success or failure: the transaction may still
be mined later and the caller decides whether to resubmit.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..errors import ConnectivityError, InvalidStateError, ReceiptTimeout
from ..logging import get_logger
from .models import Receipt, SignedTx
from .rpc import RpcClient

logger = get_logger("pneuma.confirm")

DEFAULT_POLL_INTERVAL = 2.0


class TxState(str, Enum):
    BUILT = "built"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    PENDING = "pending"
    MINED_SUCCESS = "mined_success"
    MINED_FAILURE = "mined_failure"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (TxState.MINED_SUCCESS, TxState.MINED_FAILURE, TxState.TIMED_OUT)


@dataclass(frozen=True)
class ConfirmationResult:
    tx_hash: str
    state: TxState
    receipt: Optional[Receipt] = None

    @property
    def succeeded(self) -> bool:
        return self.state is TxState.MINED_SUCCESS

    @property
    def contract_address(self) -> Optional[str]:
        return self.receipt.contract_address if self.receipt else None

    def raise_for_timeout(self) -> "ConfirmationResult":
        if self.state is TxState.TIMED_OUT:
            raise ReceiptTimeout(f"Transaction {self.tx_hash} not confirmed in time", tx_hash=self.tx_hash)
        return self


class Submission:
    """
    Owns one SignedTx from broadcast to a terminal state.

    Args:
        rpc: Session RPC client
        signed: The signed transaction
        poll_interval: Seconds between receipt lookups
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        rpc: RpcClient,
        signed: SignedTx,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.rpc = rpc
        self.signed = signed
        self.poll_interval = poll_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._state = TxState.SIGNED
        self._broadcast_attempted = False
        self._result: Optional[ConfirmationResult] = None

    @property
    def state(self) -> TxState:
        return self._state

    @property
    def tx_hash(self) -> str:
        return self.signed.hash

    def broadcast(self) -> str:
        """
        Issue exactly one eth_sendRawTransaction.

        NonceConflict ("already known", "nonce too low", underpriced
        replacement) propagates: re-plan and build a new transaction
        instead of retrying this payload.

        Raises:
            InvalidStateError: Broadcast was already attempted
        """
        with self._lock:
            if self._broadcast_attempted:
                raise InvalidStateError(f"Transaction {self.tx_hash} was already broadcast")
            self._broadcast_attempted = True

        node_hash = self.rpc.send_raw_transaction(self.signed.raw)
        if isinstance(node_hash, str) and node_hash.lower() != self.tx_hash.lower():
            logger.warning("Node reported hash %s for %s", node_hash, self.tx_hash)

        self._state = TxState.BROADCAST
        logger.info("Broadcast %s (nonce %d)", self.tx_hash, self.signed.unsigned.nonce)
        return self.tx_hash

    def _finish(self, state: TxState, receipt: Optional[Receipt] = None) -> ConfirmationResult:
        self._state = state
        self._result = ConfirmationResult(tx_hash=self.tx_hash, state=state, receipt=receipt)
        return self._result

    def wait(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ConfirmationResult:
        """
        Poll for the receipt until mined, the deadline passes or ``cancel`` is set.

        Waits between polls block on ``cancel`` so setting it returns
        TimedOut immediately. Cancelling never un-sends the broadcast.

        Args:
            timeout: Seconds from now; None waits until cancelled
            cancel: Cancellation token

        Returns:
            ConfirmationResult in a terminal state
        """
        if self._state in (TxState.BUILT, TxState.SIGNED):
            raise InvalidStateError(f"Transaction {self.tx_hash} has not been broadcast")
        if self._result is not None and self._state is not TxState.TIMED_OUT:
            return self._result

        cancel = cancel or threading.Event()
        deadline = None if timeout is None else self._clock() + timeout
        self._state = TxState.PENDING

        while True:
            if cancel.is_set():
                logger.info("Wait for %s cancelled", self.tx_hash)
                return self._finish(TxState.TIMED_OUT)

            try:
                payload = self.rpc.get_transaction_receipt(self.tx_hash)
            except ConnectivityError as e:
                logger.warning("Receipt lookup for %s failed: %s", self.tx_hash, e)
                payload = None

            if payload is not None:
                receipt = Receipt.from_rpc(payload)
                if receipt.succeeded:
                    logger.info("Mined %s in block %d", self.tx_hash, receipt.block_number)
                    return self._finish(TxState.MINED_SUCCESS, receipt)
                logger.warning(
                    "Mined %s in block %d without success status (status=%r)",
                    self.tx_hash,
                    receipt.block_number,
                    receipt.raw.get("status"),
                )
                return self._finish(TxState.MINED_FAILURE, receipt)

            pause = self.poll_interval
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.info("No receipt for %s before deadline", self.tx_hash)
                    return self._finish(TxState.TIMED_OUT)
                pause = min(pause, remaining)
            cancel.wait(pause)

    def submit(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ConfirmationResult:
        """Broadcast, then wait."""
        self.broadcast()
        return self.wait(timeout=timeout, cancel=cancel)
