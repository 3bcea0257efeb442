"""Runtime wiring: configuration + store + strategy → services."""

from .bootstrap import bootstrap_services
from .context import ServiceContext

__all__ = ["ServiceContext", "bootstrap_services"]
