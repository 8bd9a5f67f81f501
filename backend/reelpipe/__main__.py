"""CLI entry point for python -m reelpipe"""
from reelpipe.cli.commands import app

if __name__ == "__main__":
    app()
