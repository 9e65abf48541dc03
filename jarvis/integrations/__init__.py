"""Clients for external services the hub's skills talk to."""
