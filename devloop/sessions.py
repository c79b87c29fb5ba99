"""Session continuity for agent invocations.

A session ties a logical work context (PRD set, PRD, phase, tasks) to the
agent's own resume token and a bounded history of prior requests. Sessions are
persisted per provider to ``<state_dir>/sessions-<provider>.json`` and expire
lazily: an expired session is dropped the next time it is looked up.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path

from devloop.config import SessionConfig
from devloop.models import HistoryEntry, Session, SessionContext
from devloop.state import atomic_write_json, read_json

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 200
ERROR_PREVIEW_CHARS = 100


def session_id_for(context: SessionContext) -> str:
    """Build the stable session key for a work context.

    Returns:
        e.g. ``set-S1-prd-P2-phase-3``, or ``default-session`` when the
        context names none of them
    """
    parts = []
    if context.set_id:
        parts.append(f"set-{context.set_id}")
    if context.prd_id:
        parts.append(f"prd-{context.prd_id}")
    if context.phase_id:
        parts.append(f"phase-{context.phase_id}")
    return "-".join(parts) if parts else "default-session"


class SessionStore:
    """Maps work contexts to resumable agent sessions.

    Attributes:
        config: History and expiry limits
        path: JSON file the sessions are persisted to
    """

    def __init__(
        self, config: SessionConfig, state_dir: Path, provider: str = "agent"
    ) -> None:
        self.config = config
        self.path = state_dir / f"sessions-{provider}.json"
        self._sessions: dict[str, Session] | None = None

    @property
    def sessions(self) -> dict[str, Session]:
        if self._sessions is None:
            data = read_json(self.path, dict)
            self._sessions = {
                sid: Session.from_dict(raw)
                for sid, raw in (data.items() if isinstance(data, dict) else [])
            }
        return self._sessions

    def save(self) -> None:
        atomic_write_json(
            self.path, {sid: s.to_dict() for sid, s in self.sessions.items()}
        )

    def get(self, session_id: str) -> Session | None:
        """Return a live session, dropping it if it has expired."""
        session = self.sessions.get(session_id)
        if session is None:
            return None
        if self.is_expired(session):
            logger.info(f"Session {session_id} expired, discarding")
            self.delete(session_id)
            return None
        return session

    def get_or_create(self, context: SessionContext) -> Session:
        """Return the session for a context, creating it if absent or expired.

        Task ids from the context are merged into an existing session.
        """
        session_id = session_id_for(context)
        now = datetime.now().isoformat()
        session = self.get(session_id)

        if session is None:
            session = Session(
                session_id=session_id,
                context=SessionContext(
                    task_ids=list(context.task_ids),
                    prd_id=context.prd_id,
                    phase_id=context.phase_id,
                    set_id=context.set_id,
                ),
                created_at=now,
                last_used_at=now,
            )
            self.sessions[session_id] = session
            logger.debug(f"Created session {session_id}")
        else:
            session.last_used_at = now
            for task_id in context.task_ids:
                if task_id not in session.context.task_ids:
                    session.context.task_ids.append(task_id)

        self.save()
        return session

    def add_history(self, session_id: str, entry: HistoryEntry) -> None:
        """Append an entry and drop the oldest beyond max_history_items."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"Cannot add history to unknown session {session_id}")
            return

        session.history.append(entry)
        overflow = len(session.history) - self.config.max_history_items
        if overflow > 0:
            del session.history[:overflow]

        stats = session.stats
        stats.total_requests += 1
        stats.total_tokens += entry.tokens
        if entry.success:
            stats.successful_requests += 1
        else:
            stats.failed_requests += 1
        session.last_used_at = datetime.now().isoformat()
        self.save()

    def set_provider_session_id(self, session_id: str, token: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        if session.provider_session_id != token:
            session.provider_session_id = token
            self.save()

    def reset_provider_session_id(self, session_id: str) -> None:
        """Forget the resume token so the next call starts fresh."""
        session = self.sessions.get(session_id)
        if session is not None and session.provider_session_id is not None:
            session.provider_session_id = None
            self.save()

    def get_resume_token(self, session_id: str) -> str | None:
        session = self.get(session_id)
        return session.provider_session_id if session else None

    def build_prompt_with_history(self, session: Session, base_prompt: str) -> str:
        """Prefix a prompt with a short summary of recent requests.

        Args:
            session: Session whose history to summarize
            base_prompt: The prompt for the current request

        Returns:
            base_prompt unchanged when there is no history, otherwise the
            last history_window entries followed by the current request
        """
        window = self.config.history_window
        recent = session.history[-window:] if window else []
        if not recent:
            return base_prompt

        lines = ["Previous conversation context:", ""]
        for entry in recent:
            prompt = entry.prompt[:PROMPT_PREVIEW_CHARS]
            lines.append(f"[Previous Request {entry.request_id[:8]}]")
            lines.append(f"Prompt: {prompt}...")
            if entry.success:
                lines.append("Response: Success")
            else:
                lines.append(f"Response: Error - {(entry.error or '')[:ERROR_PREVIEW_CHARS]}")
            lines.append("")
        lines.extend(["---", "", "Current request:", base_prompt])
        return "\n".join(lines)

    def is_expired(self, session: Session) -> bool:
        last_used = datetime.fromisoformat(session.last_used_at)
        age = timedelta(seconds=self.config.max_session_age_seconds)
        return datetime.now() - last_used > age

    def cleanup_expired(self) -> int:
        """Drop every expired session.

        Returns:
            Number of sessions removed
        """
        expired = [sid for sid, s in self.sessions.items() if self.is_expired(s)]
        for sid in expired:
            del self.sessions[sid]
        if expired:
            self.save()
        return len(expired)

    def delete(self, session_id: str) -> None:
        if self.sessions.pop(session_id, None) is not None:
            self.save()
