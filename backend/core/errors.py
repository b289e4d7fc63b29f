"""
Engine error taxonomy.

Sparse data (no events, zero denominators, all-zero variant weights) is
never an error: those cases resolve to defined values in the engines.
"""


class EngineError(Exception):
    """Base class for analytics engine failures."""


class ConfigurationError(EngineError):
    """A definition cannot be evaluated as configured (cycle, dangling reference, no variants)."""


class NotFoundError(EngineError):
    """Unknown experiment slug, metric id, or alert id."""


class TransientStorageError(EngineError):
    """The event store or assignment ledger could not be reached."""
