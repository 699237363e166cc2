"""CLI entrypoints for algebrain.

Invoked via ``pyproject.toml`` entrypoints::

    algebrain train <config.yaml> ...
    algebrain query <run_dir> "5+3"

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from algebrain.cli.main import cli
