"""Incrementally maintained holder, tier and reward index for NFT collections."""

__version__ = "0.1.0"
