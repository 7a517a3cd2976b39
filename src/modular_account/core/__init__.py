"""
Modular Account Core

Host ledger, addresses, configuration, logging, error types and the account
contracts themselves.
"""

__all__ = []
