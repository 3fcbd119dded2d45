"""Cloud replication package."""

from travory.services.replication.bridge import ReplicationBridge, ReplicationError

__all__ = ["ReplicationBridge", "ReplicationError"]
