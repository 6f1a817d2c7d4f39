"""Testnet orchestrator.

Control plane for a multi-node ledger test network: dependency-ordered
bootstrap, shared key materialization, health probing and remediation.
"""

__version__ = "0.1.0"
