"""Command implementations for modbuild CLI.

This package contains implementations of modbuild commands that are too
complex to fit in the main cli.py file.
"""

from modbuild.commands.purge import purge_cache

__all__ = ["purge_cache"]
