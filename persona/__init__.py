"""Persona chat service: knowledge-grounded, cache-fronted, rate-limited."""
