"""Prometheus text metrics for the realtime coordinator."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
