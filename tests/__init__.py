"""
Test package for the Konfi badge engine
"""

from .fakes import InMemoryAwardStore, InMemoryCatalog, InMemoryLedger

__all__ = ["InMemoryAwardStore", "InMemoryCatalog", "InMemoryLedger"]
