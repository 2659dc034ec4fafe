"""Allow ``python -m devicelease``."""

from devicelease.main import cli

cli()
