"""
Transaction Builder - Build and sign Ethereum transactions.

Uses eth-account for signing. Builders produce immutable UnsignedTx
values; signing turns one into an immutable SignedTx exactly once.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal
from typing import Any, Optional, Union

import rlp
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_account import Account as _EthAccount
from eth_account.signers.local import LocalAccount
from eth_utils import big_endian_to_int, to_checksum_address

from ..config import MIN_GAS_SAFETY_FACTOR
from ..errors import EstimationFailure, InvalidStateError, RpcApplicationError
from ..logging import get_logger
from ..utils import from_data, normalize_address, to_data, to_quantity
from .models import Account, SignedTx, TxPlan, UnsignedTx
from .rpc import RpcClient

logger = get_logger("pneuma.tx")

# Error(string)
REVERT_SELECTOR = bytes.fromhex("08c379a0")


def revert_reason(error: RpcApplicationError) -> Optional[str]:
    """Extract a revert reason from a node error, if it carries one."""
    data = error.data
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, str) and data.startswith("0x"):
        raw = from_data(data)
        if raw[:4] == REVERT_SELECTOR:
            try:
                return abi_decode(["string"], raw[4:])[0]
            except DecodingError:
                logger.debug("Undecodable revert payload: %s", data)

    marker = "execution reverted:"
    message = error.message
    if marker in message:
        return message.split(marker, 1)[1].strip() or None
    return None


class TransactionBuilder:
    """
    Assembles UnsignedTx values from planner output.

    Args:
        rpc: Session RPC client
        gas_safety_factor: Multiplier applied to node gas estimates (>= 1.15)
    """

    def __init__(
        self,
        rpc: RpcClient,
        gas_safety_factor: Union[Decimal, float, str] = MIN_GAS_SAFETY_FACTOR,
    ) -> None:
        factor = Decimal(str(gas_safety_factor))
        if factor < MIN_GAS_SAFETY_FACTOR:
            raise ValueError(f"gas_safety_factor must be >= {MIN_GAS_SAFETY_FACTOR}, got {factor}")
        self.rpc = rpc
        self.gas_safety_factor = factor

    def estimate_gas(self, sender: str, to: Optional[str], value: int, data: bytes) -> int:
        """
        Node gas estimate multiplied by the safety factor, rounded up.

        Raises:
            EstimationFailure: The node rejected the estimate (e.g. revert)
        """
        call: dict[str, Any] = {"from": sender, "value": to_quantity(value), "data": to_data(data)}
        if to is not None:
            call["to"] = to

        try:
            estimate = self.rpc.estimate_gas(call)
        except RpcApplicationError as e:
            reason = revert_reason(e)
            raise EstimationFailure(f"Gas estimation failed: {e.message}", revert_reason=reason) from e

        padded = int((Decimal(estimate) * self.gas_safety_factor).to_integral_value(rounding=ROUND_CEILING))
        logger.debug("Gas estimate %d padded to %d", estimate, padded)
        return padded

    def build(
        self,
        plan: TxPlan,
        to: Optional[str],
        value: int = 0,
        data: Union[bytes, str] = b"",
        gas_limit: Optional[int] = None,
    ) -> UnsignedTx:
        """
        Build an unsigned transaction.

        Args:
            plan: Nonce and fee from the planner
            to: Destination address, or None for contract creation
            value: Native value in base units
            data: Calldata (or init code for contract creation)
            gas_limit: Explicit gas limit; estimated when omitted

        Returns:
            Fully determined UnsignedTx
        """
        if value < 0:
            raise ValueError("value must be non-negative")
        to = normalize_address(to) if to is not None else None
        payload = from_data(data)
        if to is None and not payload:
            raise ValueError("Contract creation needs init code")

        if gas_limit is None:
            gas_limit = self.estimate_gas(plan.sender, to, value, payload)
        elif gas_limit <= 0:
            raise ValueError("gas_limit must be positive")

        return UnsignedTx(
            nonce=plan.nonce,
            to=to,
            value=value,
            gas=gas_limit,
            fee=plan.fee,
            data=payload,
            sender=plan.sender,
        )


def _local_account(key: Union[Account, LocalAccount, str]) -> LocalAccount:
    if isinstance(key, Account):
        return key.signer
    if isinstance(key, LocalAccount):
        return key
    return _EthAccount.from_key(key)


def sign_transaction(
    unsigned: UnsignedTx,
    key: Union[Account, LocalAccount, str],
    chain_id: int,
) -> SignedTx:
    """
    Sign an unsigned transaction for ``chain_id``.

    Signing is deterministic (RFC 6979): identical inputs give an identical
    payload and hash.

    Raises:
        InvalidStateError: ``unsigned`` is already a SignedTx
        ValueError: The key does not belong to the planned sender
    """
    if isinstance(unsigned, SignedTx):
        raise InvalidStateError(f"Transaction {unsigned.hash} is already signed")
    if not isinstance(unsigned, UnsignedTx):
        raise TypeError(f"Expected UnsignedTx, got {type(unsigned).__name__}")

    signer = _local_account(key)
    if unsigned.sender is not None and unsigned.sender.lower() != signer.address.lower():
        raise ValueError(f"Key for {signer.address} cannot sign for {unsigned.sender}")

    signed = signer.sign_transaction(unsigned.to_dict(chain_id))
    return SignedTx(
        unsigned=unsigned,
        chain_id=chain_id,
        raw=bytes(signed.raw_transaction),
        hash=to_data(bytes(signed.hash)),
        v=signed.v,
        r=signed.r,
        s=signed.s,
    )


def decode_signed_payload(raw_tx: Union[bytes, str]) -> dict[str, Any]:
    """
    Decode a signed payload back into its transaction fields.

    Supports legacy (EIP-155), access-list (type 1) and dynamic-fee
    (type 2) payloads.

    Returns:
        Dict with type, chainId, nonce, fee fields, gas, to, value, data, sender
    """
    raw = from_data(raw_tx)
    if not raw:
        raise ValueError("Empty payload")

    if raw[0] >= 0xC0:
        nonce, gas_price, gas, to, value, data, v, _r, _s = rlp.decode(raw)
        v = big_endian_to_int(v)
        fields: dict[str, Any] = {
            "type": 0,
            "chainId": (v - 35) // 2 if v >= 35 else None,
            "gasPrice": big_endian_to_int(gas_price),
        }
    elif raw[0] == 1:
        chain_id, nonce, gas_price, gas, to, value, data, _access, _y, _r, _s = rlp.decode(raw[1:])
        fields = {"type": 1, "chainId": big_endian_to_int(chain_id), "gasPrice": big_endian_to_int(gas_price)}
    elif raw[0] == 2:
        chain_id, nonce, tip, fee_cap, gas, to, value, data, _access, _y, _r, _s = rlp.decode(raw[1:])
        fields = {
            "type": 2,
            "chainId": big_endian_to_int(chain_id),
            "maxPriorityFeePerGas": big_endian_to_int(tip),
            "maxFeePerGas": big_endian_to_int(fee_cap),
        }
    else:
        raise ValueError(f"Unsupported transaction type {raw[0]}")

    fields.update(
        nonce=big_endian_to_int(nonce),
        gas=big_endian_to_int(gas),
        to=to_checksum_address(to) if to else None,
        value=big_endian_to_int(value),
        data=bytes(data),
        sender=_EthAccount.recover_transaction(raw),
    )
    return fields
