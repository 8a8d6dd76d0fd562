"""
Fee & Nonce Planner.

Assigns strictly increasing nonces per account and quotes per-gas fees
bounded by the account's ceiling. Nonce assignment is the only place in
the engine that takes a lock, and the lock is per account.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

from ..errors import FeeUnavailable, InsufficientFunds, RpcError
from ..logging import get_logger
from .models import Account, FeeEstimate, TxPlan
from .rpc import RpcClient

logger = get_logger("pneuma.planner")


@dataclass
class NonceState:
    next_nonce: Optional[int] = None
    released: set[int] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class Planner:
    """
    Args:
        rpc: Session RPC client
        legacy: Quote a flat gas price instead of fee-market fields
        tip_multiplier: ``fee_cap = base_fee + tip_multiplier * tip``
        default_max_fee: Ceiling used for accounts that do not set one
    """

    def __init__(
        self,
        rpc: RpcClient,
        legacy: bool = False,
        tip_multiplier: int = 2,
        default_max_fee: Optional[int] = None,
    ) -> None:
        if tip_multiplier < 1:
            raise ValueError("tip_multiplier must be at least 1")
        self.rpc = rpc
        self.legacy = legacy
        self.tip_multiplier = tip_multiplier
        self.default_max_fee = default_max_fee
        self._states: dict[str, NonceState] = {}
        self._registry_lock = threading.Lock()

    def _state(self, address: str) -> NonceState:
        key = address.lower()
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = NonceState()
            return state

    # ============ Nonces ============

    def next_nonce(self, account: Account) -> int:
        """
        Return the account's next unused nonce.

        Released nonces are handed out first, lowest first, so an abandoned
        transaction never leaves a gap. Otherwise takes the larger of the
        node's pending count and the local counter, so nonces handed out
        but not yet seen by the node are not reused.
        """
        state = self._state(account.address)
        with state.lock:
            pending = self.rpc.get_transaction_count(account.address, "pending")
            # Anything below the node's pending count was filled by someone else
            state.released = {n for n in state.released if n >= pending}
            if state.released:
                nonce = min(state.released)
                state.released.discard(nonce)
            else:
                nonce = pending if state.next_nonce is None else max(pending, state.next_nonce)
                state.next_nonce = nonce + 1
        logger.debug("Planned nonce %d for %s (node pending=%d)", nonce, account.address, pending)
        return nonce

    def release(self, account: Account, nonce: int) -> bool:
        """
        Hand back a planned nonce that will not be broadcast.

        The most recently planned nonce rewinds the counter; any earlier one
        goes to the account's pool and is reused by the next plan. Returns
        False, with a warning, for a nonce this planner never handed out.
        """
        state = self._state(account.address)
        with state.lock:
            if state.next_nonce is None or nonce >= state.next_nonce or nonce in state.released:
                logger.warning("Ignoring release of nonce %d for %s: not outstanding", nonce, account.address)
                return False
            if nonce == state.next_nonce - 1:
                state.next_nonce = nonce
                while state.next_nonce - 1 in state.released:
                    state.next_nonce -= 1
                    state.released.discard(state.next_nonce)
            else:
                state.released.add(nonce)
        logger.debug("Released nonce %d for %s", nonce, account.address)
        return True

    def reset(self, account: Account) -> None:
        """Forget the local counter and released pool so the next plan re-reads the node."""
        state = self._state(account.address)
        with state.lock:
            state.next_nonce = None
            state.released.clear()

    # ============ Fees ============

    def _ceiling(self, account: Account) -> Optional[int]:
        return account.max_fee_per_gas if account.max_fee_per_gas is not None else self.default_max_fee

    def quote_fee(
        self,
        account: Account,
        value_hint: int = 0,
        gas_limit: Optional[int] = None,
    ) -> FeeEstimate:
        """
        Quote per-gas fees for the account.

        Fee-market: ``fee_cap = base_fee + 2 * tip``, clamped to the account
        ceiling but never below ``base_fee + tip``. Legacy: the node's
        suggested gas price. When ``gas_limit`` is given the balance is
        checked against ``value_hint + max_per_gas * gas_limit``.

        Raises:
            FeeUnavailable: Node cannot supply a quote, or the ceiling is
                below the minimum viable fee
            InsufficientFunds: Balance check failed
        """
        ceiling = self._ceiling(account)
        try:
            base_fee = None if self.legacy else self.rpc.base_fee()
            if base_fee is None:
                fee = self._legacy_quote(ceiling)
            else:
                fee = self._market_quote(base_fee, ceiling)
        except RpcError as e:
            raise FeeUnavailable(f"Node could not supply a fee quote: {e}") from e

        if gas_limit is not None:
            self.ensure_funds(account, value_hint, fee, gas_limit)
        return fee

    def _market_quote(self, base_fee: int, ceiling: Optional[int]) -> FeeEstimate:
        tip = self.rpc.max_priority_fee()
        minimum = base_fee + tip
        fee_cap = base_fee + self.tip_multiplier * tip
        if ceiling is not None:
            if minimum > ceiling:
                raise FeeUnavailable(
                    f"Fee ceiling {ceiling} is below base fee {base_fee} + tip {tip}",
                    {"base_fee": base_fee, "tip": tip, "ceiling": ceiling},
                )
            fee_cap = min(fee_cap, ceiling)
        return FeeEstimate(tip=tip, fee_cap=fee_cap, base_fee=base_fee)

    def _legacy_quote(self, ceiling: Optional[int]) -> FeeEstimate:
        gas_price = self.rpc.gas_price()
        if ceiling is not None and gas_price > ceiling:
            raise FeeUnavailable(
                f"Suggested gas price {gas_price} exceeds ceiling {ceiling}",
                {"gas_price": gas_price, "ceiling": ceiling},
            )
        return FeeEstimate(gas_price=gas_price)

    def ensure_funds(self, account: Account, value: int, fee: FeeEstimate, gas_limit: int) -> None:
        """Raise InsufficientFunds unless balance >= value + max_per_gas * gas_limit."""
        required = value + fee.max_per_gas * gas_limit
        balance = self.rpc.get_balance(account.address, "pending")
        if balance < required:
            raise InsufficientFunds(
                f"Balance of {account.address} cannot cover value + max fee",
                required=required,
                available=balance,
            )

    # ============ Plans ============

    def plan(self, account: Account, value_hint: int = 0) -> TxPlan:
        """Quote a fee, then take a nonce. A failed quote consumes no nonce."""
        fee = self.quote_fee(account, value_hint)
        return TxPlan(sender=account.address, nonce=self.next_nonce(account), fee=fee)
