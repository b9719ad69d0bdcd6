"""
kamianime.errors — Error Taxonomy
==================================

Every failure the core reports to a caller is one of four kinds.  Each
carries a short machine-readable ``reason`` alongside the human message so
the API and the bot can map it without string matching.

    AuthError        — missing or wrong webhook credential / token
    ValidationError  — malformed payload, unknown event type, bad value
    NotFoundError    — unknown or expired linking code, unknown user
    ConflictError    — code already used, account already linked
"""

from __future__ import annotations


class KamiError(Exception):
    """Base class for all domain errors raised by KamiAnime services."""

    status_code: int = 400
    default_reason: str = "error"

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(message or self.reason)

    @property
    def message(self) -> str:
        return str(self)


class AuthError(KamiError):
    status_code = 401
    default_reason = "unauthorized"


class ValidationError(KamiError):
    status_code = 422
    default_reason = "invalid"


class NotFoundError(KamiError):
    status_code = 404
    default_reason = "not_found"


class ConflictError(KamiError):
    status_code = 409
    default_reason = "conflict"
