"""Command objects, reply parsing and slot-based node routing for Redis Cluster."""

__version__ = "0.1.0"
__all__ = ["command", "stream", "replies", "cluster", "cluster_client"]