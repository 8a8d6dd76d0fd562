"""Environment configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
MIN_GAS_SAFETY_FACTOR = Decimal("1.15")


@dataclass(frozen=True, slots=True)
class Config:
    rpc_url: str = DEFAULT_RPC_URL
    ws_url: Optional[str] = None
    chain_id: Optional[int] = None
    rpc_timeout: float = 30.0
    rpc_retries: int = 3
    rpc_backoff: float = 0.5
    poll_interval: float = 2.0
    receipt_timeout: float = 120.0
    gas_safety_factor: Decimal = MIN_GAS_SAFETY_FACTOR
    max_fee_per_gas: Optional[int] = None
    legacy_pricing: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.gas_safety_factor < MIN_GAS_SAFETY_FACTOR:
            raise ConfigError(
                f"Gas safety factor must be >= {MIN_GAS_SAFETY_FACTOR}, got {self.gas_safety_factor}"
            )
        if self.rpc_retries < 1:
            raise ConfigError("RPC retries must be at least 1")
        if self.rpc_timeout <= 0 or self.poll_interval <= 0:
            raise ConfigError("Timeouts and intervals must be positive")


def _get(name: str) -> str:
    return os.environ.get(name, "").strip()


def _parse(name: str, raw: str, kind: type):
    try:
        return kind(raw)
    except (ValueError, InvalidOperation) as e:
        raise ConfigError(f"{name} is not a valid {kind.__name__}: {raw!r}") from e


def _parse_bool(raw: str) -> bool:
    return raw.lower() in {"1", "true", "yes", "on"}


def load_config(env_path: Optional[Path] = None) -> Config:
    """Load configuration from environment variables.

    Values from ``env_path`` (or a ``.env`` in the working directory) are
    loaded first without overriding variables already set.

    Raises ConfigError when a value cannot be parsed or is out of range.
    """
    if env_path is not None:
        load_dotenv(env_path)
    else:
        load_dotenv()

    raw_chain_id = _get("KERYKEION_CHAIN_ID")
    raw_max_fee = _get("KERYKEION_MAX_FEE_PER_GAS")
    raw_factor = _get("KERYKEION_GAS_SAFETY_FACTOR")

    return Config(
        rpc_url=_get("KERYKEION_RPC_URL") or DEFAULT_RPC_URL,
        ws_url=_get("KERYKEION_WS_URL") or None,
        chain_id=_parse("KERYKEION_CHAIN_ID", raw_chain_id, int) if raw_chain_id else None,
        rpc_timeout=_parse("KERYKEION_RPC_TIMEOUT", _get("KERYKEION_RPC_TIMEOUT") or "30", float),
        rpc_retries=_parse("KERYKEION_RPC_RETRIES", _get("KERYKEION_RPC_RETRIES") or "3", int),
        rpc_backoff=_parse("KERYKEION_RPC_BACKOFF", _get("KERYKEION_RPC_BACKOFF") or "0.5", float),
        poll_interval=_parse("KERYKEION_POLL_INTERVAL", _get("KERYKEION_POLL_INTERVAL") or "2.0", float),
        receipt_timeout=_parse(
            "KERYKEION_RECEIPT_TIMEOUT", _get("KERYKEION_RECEIPT_TIMEOUT") or "120", float
        ),
        gas_safety_factor=_parse("KERYKEION_GAS_SAFETY_FACTOR", raw_factor, Decimal)
        if raw_factor
        else MIN_GAS_SAFETY_FACTOR,
        max_fee_per_gas=_parse("KERYKEION_MAX_FEE_PER_GAS", raw_max_fee, int) if raw_max_fee else None,
        legacy_pricing=_parse_bool(_get("KERYKEION_LEGACY_PRICING")),
        log_level=_get("KERYKEION_LOG_LEVEL") or "INFO",
    )
