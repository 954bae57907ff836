"""Entry point for `python -m autobuild`."""

from autobuild.cli.commands import app

if __name__ == "__main__":
    app()
