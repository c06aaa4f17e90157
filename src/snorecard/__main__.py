"""Entry point for ``python -m snorecard``."""

from snorecard.cli import cli

if __name__ == "__main__":
    cli()
