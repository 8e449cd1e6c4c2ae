"""Wallet scanning for deposited tokens."""

from offramp.scanner.base import Asset, Fungible, Native, TokenBalance
from offramp.scanner.tokens import TokenScanner

__all__ = ["Asset", "Fungible", "Native", "TokenBalance", "TokenScanner"]
