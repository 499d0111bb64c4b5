"""API server entry point for python -m pubpipe.api.

Runs the same server as `pubpipe serve`, with both schedulers and the
rich log handler.
"""
from pubpipe.cli.commands import serve

if __name__ == "__main__":
    serve(host=None, port=None)
