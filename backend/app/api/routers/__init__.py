"""Router exports for FastAPI composition."""

from . import health, time_entries

__all__ = ["health", "time_entries"]
