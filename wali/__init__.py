"""Wali: a local document knowledge base with retrieval-augmented answers."""

__version__ = "0.1.0"
