"""Instance store CLI.

Command-line access to an instance store, built with Click and Rich.
"""

from instancestore.cli.main import cli

__all__ = ["cli"]
