"""Escrow orderflow - reliable off-chain event stream for an on-chain escrow program."""

__version__ = "0.1.0"
