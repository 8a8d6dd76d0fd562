"""
Signing key loading.

Keys are read from the PRIVATE_KEY environment variable, optionally
populated from ~/.kerykeion/.env. Key generation and storage are left to
the wallet tooling of the caller.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ..pneuma.models import Account

KERYKEION_DIR = Path.home() / ".kerykeion"
KERYKEION_ENV = KERYKEION_DIR / ".env"


def load_private_key(env_path: Optional[Path] = None) -> str:
    """
    Load private key from .env file or environment.

    Args:
        env_path: Path to .env file (default: ~/.kerykeion/.env)

    Returns:
        0x-prefixed hex private key

    Raises:
        ValueError: If PRIVATE_KEY is not set
    """
    env_path = env_path or KERYKEION_ENV

    if env_path.exists():
        load_dotenv(env_path, override=True)

    private_key = os.environ.get("PRIVATE_KEY", "").strip()
    if not private_key:
        raise ValueError(f"PRIVATE_KEY not found. Set it in the environment or in {env_path}")

    if not private_key.startswith("0x"):
        private_key = "0x" + private_key

    return private_key


def get_account(
    private_key: Optional[str] = None,
    max_fee_per_gas: Optional[int] = None,
) -> Account:
    """
    Build a sending Account from a private key.

    Args:
        private_key: 0x-prefixed hex private key. If None, loads from .env.
        max_fee_per_gas: Per-account fee ceiling in base units

    Returns:
        Account bound to the key's address
    """
    if private_key is None:
        private_key = load_private_key()
    return Account.from_key(private_key, max_fee_per_gas=max_fee_per_gas)
