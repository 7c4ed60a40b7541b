"""Persistence layer for walker state and the piece index."""

from .repository import PieceIndexRepository

__all__ = [
    "PieceIndexRepository",
]
