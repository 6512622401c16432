"""Solana Pay payment requests, on-chain verification and order lifecycle."""

__version__ = "0.1.0"
