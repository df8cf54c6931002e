"""Request helpers shared by the pipeline middlewares."""

from .request import get_client_ip, write_json

__all__ = [
    "get_client_ip",
    "write_json",
]
