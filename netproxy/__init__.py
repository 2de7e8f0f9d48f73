"""Tunnel client, packet model, metrics and option handling for a network proxy."""

__version__ = "0.1.0"