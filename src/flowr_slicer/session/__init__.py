"""Sessions with the flowR analysis engine."""

from flowr_slicer.session.base import (
    FINAL_STATES,
    READY_STATES,
    SessionKind,
    SessionState,
    SliceElement,
    SliceResult,
    SliceSession,
    destroy_session,
)
from flowr_slicer.session.local import LocalSession
from flowr_slicer.session.remote import RemoteSession

__all__ = [
    "FINAL_STATES",
    "READY_STATES",
    "LocalSession",
    "RemoteSession",
    "SessionKind",
    "SessionState",
    "SliceElement",
    "SliceResult",
    "SliceSession",
    "destroy_session",
]
