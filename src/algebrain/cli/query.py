"""Query subcommand: answer one query with a trained block."""

from __future__ import annotations

from pathlib import Path

import click

from algebrain.model import BLOCK_FILENAME


@click.command()
@click.argument("run_dir", type=click.Path(exists=True, file_okay=False))
@click.argument("text")
@click.option(
    "--max-len",
    type=click.IntRange(min=0),
    default=None,
    help="Maximum response length (defaults to query.max_response_len from the run config).",
)
def query(run_dir: str, text: str, max_len: int | None) -> None:
    """Answer TEXT with the block saved in RUN_DIR.

    :param str run_dir: Run directory written by ``algebrain train``.
    :param str text: Query text, e.g. "5+3".
    :param max_len: Optional response length cap.
    """
    from algebrain.model import build_codec, load_block
    from algebrain.runner import Runner
    from algebrain.utils.io import load_run_config

    try:
        cfg = load_run_config(run_dir)
        block = load_block(Path(run_dir) / BLOCK_FILENAME, cfg)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    limit = cfg.query.max_response_len if max_len is None else max_len
    runner = Runner(block, build_codec(cfg), max_response_len=limit)
    click.echo(runner.query(text))
