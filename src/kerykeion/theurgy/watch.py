"""
Theurgy Watch - Stream contract logs or new block heads.

Decodes logs against event declarations given on the command line, e.g.
--event "ItemSet(bytes32 indexed key, bytes32 value)". Undecodable logs
are printed as warnings and the stream continues.
"""

from __future__ import annotations

from typing import Optional

import click

from ..errors import KerykeionError, SubscriptionDropped
from ..pneuma.abi import EventSchema
from ..pneuma.models import BlockHeader, LogEvent
from ..pneuma.subscribe import Backpressure, SkippedEvent
from . import fail, open_session


def _format_value(value: object) -> str:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return str(value)


@click.command()
@click.option("--address", "addresses", multiple=True, help="Contract address (repeatable)")
@click.option("--event", "events", multiple=True, help="Event declaration to decode (repeatable)")
@click.option("--only-events", is_flag=True, help="Filter on topic0 of the single --event given")
@click.option("--from-block", default=None, type=int, help="First block to deliver")
@click.option("--heads", is_flag=True, help="Watch new block heads instead of logs")
@click.option("--drop-oldest", is_flag=True, help="Drop oldest items instead of blocking when behind")
@click.option("--limit", default=None, type=int, help="Stop after this many items")
@click.pass_context
def watch(
    ctx: click.Context,
    addresses: tuple[str, ...],
    events: tuple[str, ...],
    only_events: bool,
    from_block: Optional[int],
    heads: bool,
    drop_oldest: bool,
    limit: Optional[int],
) -> None:
    """Stream contract logs (default) or new heads until interrupted."""
    policy = Backpressure.DROP_OLDEST if drop_oldest else Backpressure.BLOCK

    try:
        schemas = [EventSchema.parse(e) for e in events]
    except ValueError as exc:
        fail(f"Invalid event: {exc}")

    topic0 = None
    if only_events:
        if len(schemas) != 1:
            fail("--only-events needs exactly one --event")
        topic0 = schemas[0].topic0

    with open_session(ctx) as session:
        try:
            if heads:
                subscription = session.subscribe_heads(start_block=from_block, backpressure=policy)
            else:
                subscription = session.subscribe_logs(
                    addresses=list(addresses),
                    events=schemas,
                    topic0=topic0,
                    start_block=from_block,
                    backpressure=policy,
                )
        except ValueError as exc:
            fail(str(exc))

        count = 0
        try:
            for item in subscription:
                if isinstance(item, BlockHeader):
                    click.echo(f"[Head] #{item.number} {item.hash} baseFee={item.base_fee}")
                elif isinstance(item, SkippedEvent):
                    click.secho(f"[Skip] {item.reason}", fg="yellow")
                elif isinstance(item, LogEvent):
                    click.echo(f"[Log] block={item.block_number} tx={item.tx_hash} index={item.log_index}")
                    if item.decoded is not None:
                        click.echo(f"  event: {item.decoded.name}")
                        for name, value in item.decoded.args.items():
                            click.echo(f"  {name}: {_format_value(value)}")
                count += 1
                if limit is not None and count >= limit:
                    break
        except SubscriptionDropped as exc:
            fail(str(exc))
        except KeyboardInterrupt:
            click.echo("Interrupted")
        except KerykeionError as exc:
            fail(str(exc))
        finally:
            subscription.close()
