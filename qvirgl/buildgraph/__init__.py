"""Ninja build graph model and host-specific corrections."""
