"""Monitoring helpers and metric registry for the client components."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
