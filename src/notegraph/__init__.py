"""
Notegraph - AI enrichment and connection discovery for personal notes.
This package ingests short notes, enriches each one with an AI summary,
topics and an embedding, and links it to the owner's related notes with
weighted, undirected connections.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notegraph")
except PackageNotFoundError:
    __version__ = "0.3.0"
