"""Session table and runner lifecycle."""

from threadpilot.sessions.manager import Session, SessionManager, SweepReport

__all__ = ["Session", "SessionManager", "SweepReport"]
