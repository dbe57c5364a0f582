"""Entry point for `python -m dockform`.

Usage:
    python -m dockform apply stack.py
    python -m dockform destroy todo --yes
"""

from __future__ import annotations

from dockform.cli import cli

cli()
