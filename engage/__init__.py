# =============================================================================
# Engage Chat Package - Dynamic Version Loading
# =============================================================================
"""
Engage Chat - chat-group lifecycle and membership reconciliation service.

Version is loaded from installed package metadata (pyproject.toml is the
single source of truth).
"""

from __future__ import annotations


def _get_version() -> str:
    """Get package version from installed metadata."""
    from importlib.metadata import version, PackageNotFoundError

    try:
        return version("engage-chat")
    except PackageNotFoundError:
        # Running from a source checkout without `pip install -e .`
        return "0.1.0-unknown"


__version__: str = _get_version()
__description__: str = "Engage - chat group lifecycle and membership reconciliation"

__all__ = [
    "__version__",
    "__description__",
]
