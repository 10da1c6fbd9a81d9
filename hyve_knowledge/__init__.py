"""Hyve Knowledge: hybrid graph + vector retrieval over game knowledge corpora."""

__version__ = "0.4.0"
