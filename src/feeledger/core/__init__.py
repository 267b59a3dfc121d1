"""
feeledger core module

Attribution engine, tracked-asset registry, Proof-of-History ledger, the
upstream boundary and the service object that wires them into a poll loop.
"""

__all__ = []
