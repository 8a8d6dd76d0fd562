"""
Kerykeion CLI

Command-line interface over a Kerykeion session.

Commands:
  whoami    - Show the signing address
  nonce     - Show the node pending nonce for an address
  fee       - Show the current fee quote
  receipt   - Look up a transaction receipt
  send      - Sign, broadcast and confirm a transaction
  watch     - Stream contract logs or new heads
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

import click

from . import __version__
from .config import load_config
from .errors import ConfigError, KerykeionError
from .logging import configure_logging
from .sigil.eth import get_account, load_private_key
from .theurgy import fail, open_session


# ============ Main CLI Group ============


@click.group()
@click.version_option(version=__version__, prog_name="kerykeion")
@click.option("--rpc-url", envvar="KERYKEION_RPC_URL", default=None, help="HTTP JSON-RPC endpoint")
@click.option("--ws-url", envvar="KERYKEION_WS_URL", default=None, help="Websocket endpoint for subscriptions")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")
@click.pass_context
def cli(ctx: click.Context, rpc_url: Optional[str], ws_url: Optional[str], log_level: Optional[str]) -> None:
    """Kerykeion: transaction and subscription engine for EVM nodes."""
    try:
        config = load_config()
    except ConfigError as exc:
        fail(str(exc))

    overrides = {}
    if rpc_url:
        overrides["rpc_url"] = rpc_url
    if ws_url:
        overrides["ws_url"] = ws_url
    if log_level:
        overrides["log_level"] = log_level.upper()
    if overrides:
        config = replace(config, **overrides)

    try:
        configure_logging(config.log_level)
    except ConfigError as exc:
        fail(str(exc))
    ctx.obj = {"config": config}


# ============ Commands ============

from .theurgy.send import send
from .theurgy.watch import watch

cli.add_command(send)
cli.add_command(watch)


@cli.command()
def whoami() -> None:
    """Show the signing address."""
    try:
        address = get_account(load_private_key()).address
    except ValueError as exc:
        fail(str(exc))
    click.echo(f"Address: {address}")


@cli.command()
@click.argument("address")
@click.pass_context
def nonce(ctx: click.Context, address: str) -> None:
    """Show the node's pending nonce for ADDRESS."""
    with open_session(ctx) as session:
        try:
            value = session.rpc.get_transaction_count(address, "pending")
        except KerykeionError as exc:
            fail(str(exc))
    click.echo(f"Nonce: {value}")


@cli.command()
@click.pass_context
def fee(ctx: click.Context) -> None:
    """Show the current fee quote in base units per gas."""
    with open_session(ctx) as session:
        try:
            account = get_account(load_private_key())
            quote = session.planner.quote_fee(account)
        except (KerykeionError, ValueError) as exc:
            fail(str(exc))

    if quote.is_legacy:
        click.echo(f"Gas price: {quote.gas_price}")
    else:
        click.echo(f"Base fee:  {quote.base_fee}")
        click.echo(f"Tip:       {quote.tip}")
        click.echo(f"Fee cap:   {quote.fee_cap}")


@cli.command()
@click.argument("tx_hash")
@click.pass_context
def receipt(ctx: click.Context, tx_hash: str) -> None:
    """Look up the receipt for TX_HASH."""
    with open_session(ctx) as session:
        try:
            found = session.receipt(tx_hash)
        except KerykeionError as exc:
            fail(str(exc))

    if found is None:
        click.echo("Pending (no receipt yet)")
        return

    status = {True: "success", False: "failure", None: "unknown"}[found.status]
    click.echo(f"Status:   {status}")
    click.echo(f"Block:    {found.block_number} ({found.block_hash})")
    click.echo(f"Gas used: {found.gas_used}")
    click.echo(f"Logs:     {len(found.logs)}")
    if found.contract_address:
        click.echo(f"Contract: {found.contract_address}")
