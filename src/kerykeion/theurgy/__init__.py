"""
Theurgy - operator commands.

Thin click commands over a Session; all chain logic lives in pneuma.
"""

from __future__ import annotations

import sys

import click

from ..config import Config
from ..session import Session


def open_session(ctx: click.Context) -> Session:
    """Build a Session from the configuration stored on the context."""
    config: Config = ctx.obj["config"]
    return Session.from_config(config)


def fail(message: str) -> None:
    click.secho(f"ERROR: {message}", fg="red")
    sys.exit(1)
