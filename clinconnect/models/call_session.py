"""
Call session state management for phone calls.

This module provides the CallSession record and the CallSessionRegistry that owns
every session in the process. Twilio's voice webhook is turn based: each spoken
turn arrives as a separate HTTP request, so the registry is what ties those
requests (and, in streaming mode, the media socket) back to one conversation.

The registry is built once per application and handed to the components that
need it; it is never a module-level global.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from clinconnect.agents.base import AgentId
from clinconnect.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class Turn:
    """One entry of a call's conversation history."""

    role: str
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(eq=False)
class CallSession:
    """
    Mutable state of one phone call.

    Sessions compare by identity: two lookups for the same call id must yield
    the very same object.
    """

    call_id: str
    active_agent: AgentId = AgentId.INTAKE
    history: List[Turn] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    stream_sid: Optional[str] = None
    used_fillers: List[str] = field(default_factory=list)
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def add_turn(self, role: str, text: str, timestamp: Optional[float] = None) -> Turn:
        """Append a turn to the history. History is never rewritten."""
        turn = Turn(role=role, text=text, timestamp=time.time() if timestamp is None else timestamp)
        self.history.append(turn)
        return turn

    @property
    def last_activity(self) -> float:
        """Timestamp of the latest turn, or creation time for a silent call."""
        if self.history:
            return self.history[-1].timestamp
        return self.created_at

    def recent_history(self, window: int) -> List[Turn]:
        return self.history[-window:] if window > 0 else []


class CallSessionRegistry:
    """
    Process-wide map from call id to CallSession.

    All mutations of the map happen under one lock, so first touch of a call id
    creates exactly one session even when request handlers race. Individual
    sessions are only ever mutated by the task handling that call.
    """

    def __init__(self, default_agent: AgentId = AgentId.INTAKE):
        """Initialize an empty registry."""
        self.default_agent = default_agent
        self._sessions: Dict[str, CallSession] = {}
        self._lock = threading.Lock()

    def get_or_create(self, call_id: str) -> CallSession:
        """
        Return the session for ``call_id``, creating it on first touch.

        Args:
            call_id: Provider-assigned call identifier (Twilio CallSid)

        Returns:
            The one CallSession instance registered for this call
        """
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None:
                session = CallSession(call_id=call_id, active_agent=self.default_agent)
                self._sessions[call_id] = session
                logger.info(f"Created call session {call_id} with agent {session.active_agent.value}")
            return session

    def get(self, call_id: str) -> Optional[CallSession]:
        with self._lock:
            return self._sessions.get(call_id)

    def delete(self, call_id: str) -> bool:
        """
        Remove a session. Deleting an unknown call id is a no-op.

        Returns:
            True if a session was removed
        """
        with self._lock:
            removed = self._sessions.pop(call_id, None)
        if removed is not None:
            logger.info(f"Deleted call session {call_id}")
        return removed is not None

    def sweep_expired(self, now: float, staleness: float) -> List[str]:
        """
        Evict every session whose last activity is older than ``staleness``.

        A session with history is judged by its last turn; a session without
        history by its creation time.

        Returns:
            The call ids that were evicted
        """
        cutoff = now - staleness
        with self._lock:
            expired = [
                call_id
                for call_id, session in self._sessions.items()
                if session.last_activity < cutoff
            ]
            for call_id in expired:
                del self._sessions[call_id]
        if expired:
            logger.info(f"Swept {len(expired)} stale call session(s): {', '.join(expired)}")
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._sessions

    def call_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)


async def run_periodic_sweep(
    registry: CallSessionRegistry, interval: float, staleness: float
) -> None:
    """
    Sweep stale sessions every ``interval`` seconds until cancelled.

    Args:
        registry: Registry to sweep
        interval: Seconds between sweeps
        staleness: Age in seconds after which a session is evicted
    """
    logger.info(f"Session sweeper started (interval={interval}s, staleness={staleness}s)")
    try:
        while True:
            await asyncio.sleep(interval)
            registry.sweep_expired(time.time(), staleness)
    except asyncio.CancelledError:
        logger.info("Session sweeper stopped")
        raise
