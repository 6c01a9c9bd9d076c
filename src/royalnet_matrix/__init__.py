"""Matrix command bot for the RYG community."""

__version__ = "0.1.0"

from .types import MatrixIncomingMessage

__all__ = [
    "MatrixIncomingMessage",
]
