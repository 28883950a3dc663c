"""Router exports for the Catalog Mirror API."""
from . import catalog, health, jobs, snapshot

__all__ = ["catalog", "health", "jobs", "snapshot"]
