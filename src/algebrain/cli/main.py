"""Main CLI entry point.

Defines the Click group and the banner.
"""

from __future__ import annotations

import click

from algebrain._version import __version__

BANNER = f"""
       _            _
  __ _| | __ _  ___| |__  _ __ __ _(_)_ __
 / _` | |/ _` |/ _ \\ '_ \\| '__/ _` | | '_ \\
| (_| | | (_| |  __/ |_) | | | (_| | | | | |
 \\__,_|_|\\__, |\\___|_.__/|_|  \\__,_|_|_| |_|
         |___/

Version: {__version__}
""".strip("\n")


def print_banner() -> None:
    """Print the algebrain banner."""
    click.echo(BANNER)


@click.group()
@click.version_option(version=__version__, prog_name="algebrain")
def cli() -> None:
    """algebrain: train and query a dual-phase recurrent algebra model."""


# Import and register subcommands
from algebrain.cli.train import train  # noqa: E402

cli.add_command(train)

from algebrain.cli.query import query  # noqa: E402

cli.add_command(query)
