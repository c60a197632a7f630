"""Per-conversation session tracking with TTL eviction."""

from voice_agents.shared.sessions.registry import SessionRecord, SessionRegistry

__all__ = ["SessionRecord", "SessionRegistry"]
