"""
RiskAnalysis - Exceptions
"""

from typing import Optional


class RiskAnalysisError(Exception):
    """Base class for all package errors."""


class StoreError(RiskAnalysisError):
    """A document store read or write failed."""


class ProbeError(RiskAnalysisError):
    """The device/network probe could not answer."""


class AuthError(RiskAnalysisError):
    """Identity operation rejected.

    ``code`` is a stable machine-readable identifier such as
    ``user-not-found`` or ``email-already-in-use``.
    """

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or code
        super().__init__(self.message)
