"""Allow running the CLI with ``python -m devloop``."""

from devloop.cli import cli

if __name__ == "__main__":
    cli()
