"""In-process RPC over a simulated, optionally unreliable network."""

__all__ = ["client", "errors", "network", "server", "service"]