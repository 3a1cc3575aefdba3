"""Tools for building and testing distributed systems: a message codec, simulated RPC and linearizability checking."""

__version__ = "0.1.0"
__all__ = ["codec", "linearizability", "rpc"]