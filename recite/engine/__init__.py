"""
MatchStateMachine - Core engine for the recitation companion.

The engine owns voice activity detection, phrase matching and session
state, exposing a signal-based interface for consumers (CLI, web).
"""

from recite.engine.core import MatchStateMachine, thread_timer_scheduler
from recite.engine.state import DisplayLine, MatchState, Permission, SessionState

__all__ = [
    "MatchStateMachine",
    "thread_timer_scheduler",
    "DisplayLine",
    "MatchState",
    "Permission",
    "SessionState",
]
