"""
Agent module - the execution loop and its runtime.

Includes:
- AgentSession: request -> tool -> append loop for one conversation
- SessionRuntimeManager: fan-out, replay buffer and confirmation handshake
- Compaction: turn-based context summarization
"""

from .compaction import CompactionConfig, CompactionResult, compact, needs_compaction, segment_into_turns
from .core import AgentSession, RunRequest
from .session import SessionRuntimeManager

__all__ = [
    "AgentSession",
    "RunRequest",
    "SessionRuntimeManager",
    "CompactionConfig",
    "CompactionResult",
    "compact",
    "needs_compaction",
    "segment_into_turns",
]
