"""Exception hierarchy for SpecFirst.

Gate outcomes are reported as data (``GateResult``); these exceptions are
reserved for conditions a caller cannot route around inside a gate.
"""

from __future__ import annotations

from typing import Optional


class SpecFirstError(Exception):
    """Base class for all SpecFirst errors."""

    def __init__(self, message: str, resolution: Optional[str] = None):
        super().__init__(message)
        self.resolution = resolution


class ConfigurationError(SpecFirstError):
    """Project root, storage layout or an environment knob is unusable."""


class InvalidPhaseError(SpecFirstError):
    """A phase name outside the fixed phase order was requested."""


class LedgerError(SpecFirstError):
    """Base class for commit ledger failures."""


class LedgerReadError(LedgerError):
    """The ledger could not be queried. Fatal to any gate that needs it."""


class LedgerWriteError(LedgerError):
    """Staging or recording a phase completion failed. Nothing was recorded."""


class StoreError(SpecFirstError):
    """The relational store rejected an operation."""
