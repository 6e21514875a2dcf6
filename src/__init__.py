"""
src package for the trade-copier status engine.

Subpackages:
- bridge: status-file records, reading and CONFIG write-back
- copier: reconciliation, registry, change notification and the poll loop
"""
__all__ = [
    "bridge",
    "copier",
]
