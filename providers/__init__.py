"""Backend providers for database inspection and raw query execution."""

from providers.base import DatabaseProvider
from providers.factory import close_provider, get_provider, open_provider

__all__ = ["DatabaseProvider", "close_provider", "get_provider", "open_provider"]
