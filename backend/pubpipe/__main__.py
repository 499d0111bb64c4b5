"""Entry point for python -m pubpipe"""
from pubpipe.cli.commands import app

if __name__ == "__main__":
    app()
