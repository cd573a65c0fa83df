"""Entry point: python -m genrelay"""

from genrelay.cli import cli

if __name__ == "__main__":
    cli()
