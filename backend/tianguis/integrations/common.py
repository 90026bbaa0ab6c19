from __future__ import annotations

from dataclasses import dataclass


@dataclass
class IntegrationResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class IntegrationMisconfiguredError(RuntimeError):
    pass


class IntegrationRequestError(RuntimeError):
    """The remote side answered, but not with success."""


class IntegrationTimeoutError(RuntimeError):
    """No definitive answer; the caller must not assume either outcome."""
