"""Rotating crawl identities with an error-score lifecycle."""

import hashlib
import itertools
import uuid
from typing import Optional, Sequence
import structlog

from driftnet.models import CrawlSession

logger = structlog.get_logger()

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
)


class SessionPool:
    """
    Pool of crawl sessions.

    Sessions accumulate an error score on failures and are retired when
    it reaches ``max_error_score``; a session also stops being usable
    after ``max_usage_count`` uses.
    """

    def __init__(
        self,
        max_sessions: int = 10,
        max_error_score: int = 3,
        max_usage_count: int = 50,
        user_agents: Optional[Sequence[str]] = None,
        proxies: Optional[Sequence[str]] = None,
    ):
        self.max_sessions = max(1, max_sessions)
        self.max_error_score = max_error_score
        self.max_usage_count = max_usage_count
        self.user_agents = tuple(user_agents or DEFAULT_USER_AGENTS)
        self._proxies = itertools.cycle(proxies) if proxies else None
        self._sessions: dict[str, CrawlSession] = {}
        self._host_sessions: dict[str, str] = {}

    def get_session(self, hostname: Optional[str] = None) -> CrawlSession:
        """
        Return a usable session, creating or replacing one if needed.

        A host keeps getting the session first created for it while that
        session stays usable. Once the pool is full, a host without one
        borrows any usable session, and only when none is left is the
        worst session retired to make room.

        Args:
            hostname: Target host; also keeps user-agent choice stable per host

        Returns:
            Session with its usage count incremented
        """
        session = self._host_session(hostname)
        if session is None and len(self._sessions) >= self.max_sessions:
            session = next((s for s in self._sessions.values() if s.is_usable), None)
        if session is None:
            if len(self._sessions) >= self.max_sessions:
                self._retire_worst()
            session = self._create_session(hostname)
        if hostname:
            self._host_sessions[hostname] = session.id

        session.usage_count += 1
        self._update_usability(session)
        return session

    def _host_session(self, hostname: Optional[str]) -> Optional[CrawlSession]:
        if not hostname:
            return next((s for s in self._sessions.values() if s.is_usable), None)
        session = self._sessions.get(self._host_sessions.get(hostname, ""))
        if session is not None and session.is_usable:
            return session
        return None

    def get(self, session_id: str) -> Optional[CrawlSession]:
        return self._sessions.get(session_id)

    def mark_good(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.error_score = max(0, session.error_score - 1)
        self._update_usability(session)

    def mark_bad(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.error_score += 1
        self._update_usability(session)
        if session.error_score >= self.max_error_score:
            self.retire(session_id)

    def retire(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self._host_sessions = {h: sid for h, sid in self._host_sessions.items() if sid != session_id}
            logger.debug(
                "session_retired",
                session_id=session_id,
                error_score=session.error_score,
                usage_count=session.usage_count,
            )

    def _create_session(self, hostname: Optional[str]) -> CrawlSession:
        session = CrawlSession(
            id=str(uuid.uuid4()),
            user_agent=self._pick_user_agent(hostname),
            proxy=next(self._proxies) if self._proxies else None,
        )
        self._sessions[session.id] = session
        logger.debug("session_created", session_id=session.id, pool_size=len(self._sessions))
        return session

    def _pick_user_agent(self, hostname: Optional[str]) -> str:
        if hostname:
            digest = hashlib.md5(hostname.encode()).hexdigest()
            return self.user_agents[int(digest, 16) % len(self.user_agents)]
        return self.user_agents[len(self._sessions) % len(self.user_agents)]

    def _retire_worst(self) -> None:
        worst = max(
            self._sessions.values(),
            key=lambda s: s.error_score * 100 + s.usage_count,
            default=None,
        )
        if worst is not None:
            self.retire(worst.id)

    def _update_usability(self, session: CrawlSession) -> None:
        session.is_usable = (
            session.error_score < self.max_error_score
            and session.usage_count < self.max_usage_count
        )

    def get_stats(self) -> dict:
        return {
            "total": len(self._sessions),
            "usable": sum(1 for s in self._sessions.values() if s.is_usable),
        }
