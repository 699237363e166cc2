"""Train subcommand."""

from __future__ import annotations

from dataclasses import replace

import click

from algebrain.config import load_config
from algebrain.utils.io import setup_python_logging


@click.command()
@click.argument("config", type=click.Path(exists=True))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. train.steps=1000 (repeatable).",
)
@click.option(
    "--run-dir",
    type=click.Path(),
    default=None,
    help="Override logging.run_dir (must not exist yet).",
)
@click.option("--banner/--no-banner", default=False, help="Print the banner first.")
def train(
    config: str,
    overrides: tuple[str, ...],
    run_dir: str | None,
    banner: bool,
) -> None:
    """Train a dual-phase block.

    CONFIG is the path to a YAML config file.
    """
    try:
        cfg = load_config(config, overrides=list(overrides))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    if banner:
        from algebrain.cli.main import print_banner

        print_banner()

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from algebrain.train import run

    try:
        run_dir_path = run(cfg, config_path=config)
    except (FileNotFoundError, RuntimeError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"[algebrain] run_dir: {run_dir_path}")
