"""Student-management system clients (Axcelerate)."""

from src.enrollsync.sync.external.axcelerate import AxcelerateClient

__all__ = ["AxcelerateClient"]
