"""Embedded knowledge base and similarity search."""
