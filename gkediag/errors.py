"""
Diagnostic Error Taxonomy

Every failure the diagnostic passes can hit is expressed as one of these
types. Library exceptions (kubernetes, urllib3, subprocess) are translated
at the client boundary so the orchestrator only ever sees these.
"""

import difflib
from typing import List, Optional


class DiagnosticError(Exception):
    """
    Base class for all diagnostic failures.

    Attributes:
        kind: Short machine-readable error kind
        hint: Optional operator-facing suggestion
    """

    kind = "error"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self):
        return {"kind": self.kind, "message": self.message, "hint": self.hint}


class TransportError(DiagnosticError):
    """API server unreachable, TLS trust failure or timeout."""

    kind = "transport"

    def __init__(self, message: str, hint: Optional[str] = None, tls_failure: bool = False):
        super().__init__(message, hint)
        self.tls_failure = tls_failure


class AuthError(DiagnosticError):
    """No active credentials or expired credentials."""

    kind = "auth"


class PermissionDeniedError(AuthError):
    """Credentials are valid but not allowed to perform the request."""

    kind = "permission-denied"


class NotFoundError(DiagnosticError):
    """Referenced cluster, namespace or secret does not exist."""

    kind = "not-found"

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        candidates: Optional[List[str]] = None,
    ):
        super().__init__(message, hint)
        self.candidates = candidates or []

    def to_dict(self):
        data = super().to_dict()
        data["candidates"] = list(self.candidates)
        return data


class DataShapeError(DiagnosticError):
    """
    A single object is missing a field or cannot be decoded.

    Localized to one record; the pass continues without it.
    """

    kind = "data-shape"

    def __init__(self, message: str, namespace: str = "", name: str = "", field: str = ""):
        super().__init__(message)
        self.namespace = namespace
        self.name = name
        self.field = field


class ConfigError(DiagnosticError):
    """Missing or mutually exclusive inputs. Raised before any network call."""

    kind = "config"


class PassCancelledError(DiagnosticError):
    """The pass deadline expired or the caller cancelled it."""

    kind = "cancelled"


def near_matches(name: str, available: List[str], limit: int = 5) -> List[str]:
    """Return the names in ``available`` closest to ``name``."""
    matches = difflib.get_close_matches(name, available, n=limit, cutoff=0.4)
    if matches:
        return matches
    return sorted(available)[:limit]
