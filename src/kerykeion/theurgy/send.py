"""
Theurgy Send - Sign, broadcast and confirm a transaction.

Sends value and/or calldata from the configured key. Calldata can be
given raw (--data) or as a function signature plus JSON arguments.
"""

from __future__ import annotations

import json
import sys
from typing import Optional

import click

from ..errors import KerykeionError, NonceConflict
from ..pneuma.abi import encode_call
from ..sigil.eth import get_account, load_private_key
from . import fail, open_session


@click.command()
@click.option("--to", "to_address", default=None, help="Destination address (omit to deploy)")
@click.option("--value", default=0, type=int, help="Value in base units (wei)")
@click.option("--data", default=None, help="Raw calldata / init code as 0x-hex")
@click.option("--function", "signature", default=None, help="Function signature, e.g. 'transfer(address,uint256)'")
@click.option("--args", "args_json", default="[]", help="Function args as JSON array")
@click.option("--gas-limit", default=None, type=int, help="Gas limit (estimated when omitted)")
@click.option("--max-fee", default=None, type=int, help="Fee ceiling per gas in base units")
@click.option("--timeout", default=None, type=float, help="Seconds to wait for the receipt")
@click.option("--no-wait", is_flag=True, help="Return after broadcast")
@click.pass_context
def send(
    ctx: click.Context,
    to_address: Optional[str],
    value: int,
    data: Optional[str],
    signature: Optional[str],
    args_json: str,
    gas_limit: Optional[int],
    max_fee: Optional[int],
    timeout: Optional[float],
    no_wait: bool,
) -> None:
    """Sign, broadcast and (by default) confirm a transaction."""
    if data and signature:
        fail("Use either --data or --function, not both")

    calldata = data or "0x"
    if signature:
        try:
            args = json.loads(args_json)
            if not isinstance(args, list):
                raise ValueError("Args must be a JSON array")
            calldata = "0x" + encode_call(signature, args).hex()
        except ValueError as exc:
            fail(f"Invalid call: {exc}")

    try:
        account = get_account(load_private_key(), max_fee_per_gas=max_fee)
    except ValueError as exc:
        fail(str(exc))

    click.echo(f"  Sender: {account.address}")
    click.echo(f"  Target: {to_address or '(contract creation)'}")
    if value > 0:
        click.echo(f"  Value: {value} wei")

    with open_session(ctx) as session:
        try:
            result = session.send(
                account,
                to_address,
                value=value,
                data=calldata,
                gas_limit=gas_limit,
                wait=not no_wait,
                timeout=timeout,
            )
        except NonceConflict as exc:
            fail(f"Nonce conflict, re-run to re-plan: {exc}")
        except (KerykeionError, ValueError) as exc:
            fail(str(exc))

    click.echo(f"  TX: {result.tx_hash}")
    click.echo(f"  State: {result.state.value}")
    if result.contract_address:
        click.echo(f"  Contract: {result.contract_address}")
    if result.receipt is not None and not result.succeeded:
        click.secho("FAILED: Transaction did not succeed", fg="red")
        sys.exit(1)
