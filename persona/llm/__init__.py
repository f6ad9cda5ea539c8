"""Upstream model access and persona generation."""
