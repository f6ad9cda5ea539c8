"""Conversational transports and their session state."""
