"""
Web control surface for the recitation companion.

Serves a reader page and a small HTTP/WebSocket API on the local network.
"""

from recite.web.server import ControlServer

__all__ = ["ControlServer"]
