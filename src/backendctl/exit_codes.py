"""CLI exit codes and their mapping from normalised error codes."""
from __future__ import annotations

from enum import IntEnum

from .errors import RUNTIME_UNAVAILABLE_CODES, VALIDATION_CODES, ErrorCode


class ExitCode(IntEnum):
    """Process exit status reported by every backendctl command."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


def exit_code_for(code: object) -> ExitCode:
    """Return the exit status for an error *code* string (or ``None``).

    Rejected input exits with ``VALIDATION``, an unusable container runtime
    with ``ENVIRONMENT``; anything else is a ``PROVIDER`` failure.
    """
    try:
        value = ErrorCode(str(code)) if code else None
    except ValueError:
        return ExitCode.PROVIDER
    if value in VALIDATION_CODES:
        return ExitCode.VALIDATION
    if value in RUNTIME_UNAVAILABLE_CODES:
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


__all__ = ["ExitCode", "exit_code_for"]
