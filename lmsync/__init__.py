"""
Consistency core for the school LMS backend.

Archive cascades, transitive visibility, and grade roll-ups that are kept
correct without cross-document transactions.
"""

from importlib import metadata


def get_version() -> str:
    """Return the installed project version."""
    try:
        return metadata.version("lmsync")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_version"]
