"""
Read-path HTTP API for SplitWiki.
"""

from .http_server import create_http_app, run_http_server

__all__ = ["create_http_app", "run_http_server"]
