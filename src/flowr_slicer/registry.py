"""Owner of the single active flowR session."""

from __future__ import annotations

import logging

from flowr_slicer.config import SlicerConfig
from flowr_slicer.presentation import NullPresenter, SlicePresenter
from flowr_slicer.session.base import SessionKind, SessionState, SliceSession
from flowr_slicer.session.local import LocalSession
from flowr_slicer.session.remote import RemoteSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Holds at most one session, local or remote, and replaces it exclusively.

    Consumers look the session up on every use; it may be destroyed and
    replaced between a request and its response.
    """

    def __init__(self, config: SlicerConfig, presenter: SlicePresenter | None = None) -> None:
        self.config = config
        self.presenter: SlicePresenter = presenter or NullPresenter()
        self._session: SliceSession | None = None

    @property
    def active(self) -> SliceSession | None:
        return self._session

    @property
    def kind(self) -> SessionKind | None:
        return self._session.kind if self._session is not None else None

    def is_active(self, session: SliceSession) -> bool:
        return session is self._session

    def _state_changed(self, session: SliceSession, state: SessionState) -> None:
        if not self.is_active(session):
            return
        if state in (SessionState.ACTIVE, SessionState.CONNECTED):
            for notice in session.notices:
                self.presenter.on_notice(notice)
        self.presenter.on_session_state_changed(session.kind, state)

    def _replace(self, session: SliceSession) -> SliceSession:
        old, self._session = self._session, session
        if old is not None:
            logger.info("replacing %r", old)
            old.destroy()
        session.add_listener(self._state_changed)
        session.initialize()
        return session

    def establish_local(self) -> SliceSession:
        """Replace the current session with a freshly spawned local engine."""
        return self._replace(LocalSession(self.config))

    def establish_remote(self, host: str | None = None, port: int | None = None) -> SliceSession:
        """Replace the current session with a connection to a flowR server."""
        return self._replace(RemoteSession(self.config, host, port))

    def establish_default(self) -> SliceSession:
        if self.config.server.auto_connect:
            return self.establish_remote()
        return self.establish_local()

    def disconnect(self) -> SliceSession | None:
        """Drop a remote session and fall back to a local one."""
        if self._session is None or self._session.kind is not SessionKind.REMOTE:
            return self._session
        return self.establish_local()

    async def get_session(self) -> SliceSession:
        """Return a ready session, starting a local one if there is none usable.

        Raises SessionEstablishmentError if it cannot be established.
        """
        session = self._session
        if session is None or session.is_closed:
            session = self.establish_local()
        await session.wait_ready()
        return session

    def shutdown(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.destroy()

    async def aclose(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.aclose()
