"""dockform command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``dockform`` script).
"""

from dockform.cli.main import cli

__all__ = ["cli"]
