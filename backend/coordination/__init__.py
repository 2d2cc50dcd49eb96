"""
Cross-instance write coordination for match rows.
Advisory locks, provenance arbitration and post-commit notifications.
"""
from coordination.events import EventDispatcher, RedisEventPublisher
from coordination.locks import LockHandle, LockKey, LockManager
from coordination.registry import ProvenanceRegistry, SourcePriorityTable
from coordination.repository import MatchRepository, MatchSnapshot
from coordination.write_gate import WriteGate

__all__ = [
    "EventDispatcher",
    "RedisEventPublisher",
    "LockHandle",
    "LockKey",
    "LockManager",
    "ProvenanceRegistry",
    "SourcePriorityTable",
    "MatchRepository",
    "MatchSnapshot",
    "WriteGate",
]
