from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from eth_account import Account as _EthAccount
from eth_account.signers.local import LocalAccount

from ..utils import from_data, from_quantity, normalize_address, optional_quantity, to_data


@dataclass(frozen=True)
class Account:
    """Sending account: address, signing key and an optional fee ceiling."""

    address: str
    signer: LocalAccount = field(repr=False, compare=False)
    max_fee_per_gas: Optional[int] = None

    @classmethod
    def from_key(cls, private_key: str, max_fee_per_gas: Optional[int] = None) -> "Account":
        signer = _EthAccount.from_key(private_key)
        return cls(address=signer.address, signer=signer, max_fee_per_gas=max_fee_per_gas)


@dataclass(frozen=True)
class FeeEstimate:
    """
    Per-gas fee quote.

    Fee-market quotes carry ``tip`` and ``fee_cap`` with
    ``fee_cap >= base_fee + tip``; legacy quotes carry ``gas_price`` only.
    """

    tip: Optional[int] = None
    fee_cap: Optional[int] = None
    gas_price: Optional[int] = None
    base_fee: Optional[int] = None

    def __post_init__(self) -> None:
        if self.gas_price is None:
            if self.tip is None or self.fee_cap is None:
                raise ValueError("Fee-market estimate needs both tip and fee_cap")
            if self.base_fee is not None and self.fee_cap < self.base_fee + self.tip:
                raise ValueError(
                    f"fee_cap {self.fee_cap} is below base_fee {self.base_fee} + tip {self.tip}"
                )
        elif self.tip is not None or self.fee_cap is not None:
            raise ValueError("Legacy estimate cannot carry tip or fee_cap")

    @property
    def is_legacy(self) -> bool:
        return self.gas_price is not None

    @property
    def max_per_gas(self) -> int:
        """Highest per-gas price this quote can charge."""
        return self.gas_price if self.gas_price is not None else self.fee_cap

    def tx_fields(self) -> dict[str, int]:
        if self.is_legacy:
            return {"gasPrice": self.gas_price}
        return {"maxFeePerGas": self.fee_cap, "maxPriorityFeePerGas": self.tip}


@dataclass(frozen=True)
class TxPlan:
    """Planner output: the nonce and fee quote for one transaction."""

    sender: str
    nonce: int
    fee: FeeEstimate


@dataclass(frozen=True)
class UnsignedTx:
    nonce: int
    to: Optional[str]
    value: int
    gas: int
    fee: FeeEstimate
    data: bytes = b""
    sender: Optional[str] = None

    @property
    def is_creation(self) -> bool:
        return self.to is None

    def to_dict(self, chain_id: int) -> dict[str, Any]:
        """Transaction dict in the shape eth-account signs."""
        tx: dict[str, Any] = {
            "nonce": self.nonce,
            "value": self.value,
            "gas": self.gas,
            "data": to_data(self.data),
            "chainId": chain_id,
            **self.fee.tx_fields(),
        }
        if self.to is not None:
            tx["to"] = self.to
        if not self.fee.is_legacy:
            tx["type"] = 2
        return tx


@dataclass(frozen=True)
class SignedTx:
    unsigned: UnsignedTx
    chain_id: int
    raw: bytes = field(repr=False)
    hash: str
    v: int
    r: int
    s: int

    @property
    def raw_hex(self) -> str:
        return to_data(self.raw)


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class LogEvent:
    address: str
    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int
    topics: tuple[bytes, ...]
    data: bytes
    removed: bool = False
    decoded: Optional[DecodedEvent] = None

    @property
    def triple(self) -> tuple[str, str, int]:
        """Identity of a log across re-deliveries."""
        return (self.block_hash, self.tx_hash, self.log_index)

    @property
    def topic0(self) -> Optional[bytes]:
        return self.topics[0] if self.topics else None

    def with_decoded(self, decoded: DecodedEvent) -> "LogEvent":
        return replace(self, decoded=decoded)

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "LogEvent":
        return cls(
            address=normalize_address(payload["address"]),
            block_number=from_quantity(payload["blockNumber"]),
            block_hash=payload["blockHash"].lower(),
            tx_hash=payload["transactionHash"].lower(),
            log_index=from_quantity(payload["logIndex"]),
            topics=tuple(from_data(t) for t in payload.get("topics") or ()),
            data=from_data(payload.get("data")),
            removed=bool(payload.get("removed", False)),
        )


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    base_fee: Optional[int] = None

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "BlockHeader":
        return cls(
            number=from_quantity(payload["number"]),
            hash=payload["hash"].lower(),
            parent_hash=payload["parentHash"].lower(),
            timestamp=from_quantity(payload["timestamp"]),
            base_fee=optional_quantity(payload.get("baseFeePerGas")),
        )


def _parse_status(raw: Any) -> Optional[bool]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = from_quantity(raw)
    except ValueError:
        return None
    return {1: True, 0: False}.get(value)


@dataclass(frozen=True)
class Receipt:
    """
    Post-execution record of a transaction.

    ``status`` is True/False for a recognised status field and None when
    the field is absent or unrecognised; None is never treated as success.
    """

    tx_hash: str
    status: Optional[bool]
    block_number: int
    block_hash: str
    gas_used: int
    logs: tuple[LogEvent, ...] = ()
    contract_address: Optional[str] = None
    effective_gas_price: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status is True

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "Receipt":
        contract = payload.get("contractAddress")
        return cls(
            tx_hash=payload["transactionHash"].lower(),
            status=_parse_status(payload.get("status")),
            block_number=from_quantity(payload["blockNumber"]),
            block_hash=payload["blockHash"].lower(),
            gas_used=from_quantity(payload["gasUsed"]),
            logs=tuple(LogEvent.from_rpc(item) for item in payload.get("logs") or ()),
            contract_address=normalize_address(contract) if contract else None,
            effective_gas_price=optional_quantity(payload.get("effectiveGasPrice")),
            raw=dict(payload),
        )
