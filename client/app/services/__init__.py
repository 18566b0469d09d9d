"""Application service helpers."""

from .session_status import HttpSessionStatusProbe, SessionStatusProbe

__all__ = ["HttpSessionStatusProbe", "SessionStatusProbe"]
