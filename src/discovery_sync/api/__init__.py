"""HTTP API for probes, metrics and sync mode control."""

from discovery_sync.api.router import probes, router

__all__ = ["probes", "router"]
