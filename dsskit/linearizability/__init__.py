"""Linearizability checking of concurrent histories against sequential models, with a key/value model."""

__all__ = ["bitset", "checker", "model", "models"]