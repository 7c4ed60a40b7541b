"""
Piece Indexer

Walks IPNI advertisement chains of Filecoin storage providers and keeps a
(provider, piece) -> payload block sample index, served over a small HTTP API.
"""

__version__ = "0.1.0"
