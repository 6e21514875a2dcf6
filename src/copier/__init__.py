"""Account status reconciliation for the trade copier.

Submodules:
- config: environment-driven settings
- errors: error taxonomy (FileUnavailable, DecodeError, MalformedRecord, RegistryCorrupt)
- reconciler: snapshots, staleness and the grouped account view
- registry: per-API-key JSON registry with copier switches
- notifier: diff-driven change events
- poller: the poll loop that owns all of the above
- logging_utils: structured log lines and signed audit entries

Import the submodules directly; this package does not import them eagerly
because ``src.bridge`` depends on ``src.copier.errors``.
"""

__all__ = [
    "config",
    "errors",
    "reconciler",
    "registry",
    "notifier",
    "poller",
    "logging_utils",
]
