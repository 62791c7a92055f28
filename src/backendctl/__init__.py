"""backendctl: version lifecycle control for one containerised backend service.

The package root only carries release metadata. The engine lives in
:mod:`backendctl.orchestrator`, its request boundary in :mod:`backendctl.api`.
"""
from __future__ import annotations

__all__ = ["DEFAULT_USER_AGENT", "__version__", "get_version"]

# Keep in step with ``[project].version`` in pyproject.toml.
__version__ = "0.1.0a0"

DEFAULT_USER_AGENT = f"backendctl/{__version__}"


def get_version() -> str:
    """Return the installed backendctl version string."""
    return __version__
