"""Folio: a managed library of papers with metadata, files and full-text search."""

__version__ = "0.1.0"
