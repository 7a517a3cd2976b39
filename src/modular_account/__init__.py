"""
Modular Account - ERC-7579 style modular smart account core

A smart account whose validation, execution rights, fallback handling and
pre/post checks are provided by installable modules.

Main Components:
- Account: module configuration, gated execution, validation and fallback
- Modules: validator, executor, fallback and hook base classes plus reference modules
- Entry point: ERC-4337 style user operation processing
- Ledger: in-process execution host with atomic scopes
"""

__version__ = "0.1.0"
__author__ = "Modular Account Development Team"

__all__ = []
