"""stepforge CLI.

Command-line interface for planning and driving step pipelines.
"""

__version__ = "0.1.0"

from cli.stepforge.cli import app, main

__all__ = ["__version__", "app", "main"]
