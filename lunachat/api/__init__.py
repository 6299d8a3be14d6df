"""
HTTP interface of LunaChat.

- create_app: FastAPI application factory (pages, forms, SSE feeds)

Invariants:
    - Handlers only call protocols, read models and the auth backend;
      they never write stores directly
"""

from .http_server import create_app

__all__ = ["create_app"]
