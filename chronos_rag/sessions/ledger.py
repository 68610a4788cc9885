"""
Session & Cost Ledger
----------------------
Chat sessions between a student and a creator's content, with every
message, its source references and its cost.

A student returning within 24 hours continues their latest session;
otherwise a new one is opened.  Assistant messages that cite a source
double as the interaction history behind the ranking engine's affinity
signal (recent_interactions).

State lives in memory behind a lock and can be persisted to a single
JSON file with save() / load().
"""
from __future__ import annotations

import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Literal, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from chronos_rag.errors import SessionNotFound
from chronos_rag.schemas import ConversationTurn
from chronos_rag.sessions.costs import StudentCostSummary, calculate_chat_cost, calculate_student_cost
from chronos_rag.utils.helpers import format_timestamp, load_json, save_json, utcnow

SESSIONS_PATH = Path("data/sessions.json")
SESSION_REUSE_WINDOW = timedelta(hours=24)
MOST_REFERENCED_LIMIT = 10


class SourceReference(BaseModel):
    source_id: str
    source_title: str
    start_seconds: float = 0.0


class ChatMessage(BaseModel):
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    source_refs: list[SourceReference] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: Optional[str] = None
    created_at: datetime


class ChatSession(BaseModel):
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    student_id: str
    creator_id: str
    title: Optional[str] = None
    created_at: datetime
    last_message_at: Optional[datetime] = None
    archived: bool = False
    messages: list[ChatMessage] = Field(default_factory=list)

    @property
    def last_activity(self) -> datetime:
        return self.last_message_at or self.created_at


class SessionAnalytics(BaseModel):
    session_id: str
    duration_minutes: float
    message_count: int
    user_messages: int
    assistant_messages: int
    total_tokens: int
    total_cost: float
    sources_referenced: int
    avg_response_time_ms: Optional[float] = None
    most_referenced_sources: list[dict] = Field(default_factory=list)


class SessionLedger:
    """Thread-safe in-memory store of chat sessions with optional JSON persistence."""

    def __init__(
        self,
        path: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.path = Path(path) if path else None
        self.clock = clock
        self._sessions: dict[str, ChatSession] = {}
        self._lock = threading.RLock()

    # --- Sessions -------------------------------------------------------------

    def create_session(
        self,
        student_id: str,
        creator_id: str,
        title: str | None = None,
    ) -> ChatSession:
        session = ChatSession(
            student_id=student_id,
            creator_id=creator_id,
            title=title,
            created_at=self.clock(),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.debug(f"[Ledger] Created session {session.session_id} for {student_id}/{creator_id}")
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def _require(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_or_create_session(self, student_id: str, creator_id: str) -> ChatSession:
        """Continue the pair's latest session if it was active in the last 24 hours."""
        now = self.clock()
        with self._lock:
            candidates = [
                s for s in self._sessions.values()
                if s.student_id == student_id
                and s.creator_id == creator_id
                and not s.archived
            ]
            if candidates:
                latest = max(candidates, key=lambda s: s.last_activity)
                if now - latest.last_activity < SESSION_REUSE_WINDOW:
                    return latest
            return self.create_session(student_id, creator_id)

    def set_title(self, session_id: str, title: str) -> None:
        with self._lock:
            self._require(session_id).title = title

    def archive_session(self, session_id: str) -> None:
        with self._lock:
            self._require(session_id).archived = True

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.debug(f"[Ledger] Deleted session {session_id}")
        return removed

    def list_sessions(
        self,
        student_id: str | None = None,
        creator_id: str | None = None,
        include_archived: bool = False,
        limit: int = 20,
    ) -> list[ChatSession]:
        """Sessions ordered by last activity, newest first."""
        with self._lock:
            sessions = [
                s for s in self._sessions.values()
                if (student_id is None or s.student_id == student_id)
                and (creator_id is None or s.creator_id == creator_id)
                and (include_archived or not s.archived)
            ]
        sessions.sort(key=lambda s: s.last_activity, reverse=True)
        return sessions[:limit]

    # --- Messages -------------------------------------------------------------

    def add_message(
        self,
        session_id: str,
        role: Literal["user", "assistant"],
        content: str,
        source_refs: Sequence[SourceReference] = (),
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str | None = None,
        cost_usd: float | None = None,
    ) -> ChatMessage:
        """
        Append a message.  When cost_usd is omitted the chat cost is derived
        from the token counts and model pricing.
        """
        if cost_usd is None:
            cost_usd = (
                calculate_chat_cost(input_tokens, output_tokens, model).total_cost
                if model and (input_tokens or output_tokens)
                else 0.0
            )

        with self._lock:
            session = self._require(session_id)
            message = ChatMessage(
                session_id=session_id,
                role=role,
                content=content,
                source_refs=list(source_refs),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=cost_usd,
                model=model,
                created_at=self.clock(),
            )
            session.messages.append(message)
            session.last_message_at = message.created_at
        return message

    def recent_turns(self, session_id: str, limit: int = 5) -> list[ConversationTurn]:
        """The last `limit` messages as conversation turns, oldest first."""
        with self._lock:
            messages = list(self._require(session_id).messages)
        if limit <= 0:
            return []
        return [ConversationTurn(role=m.role, content=m.content) for m in messages[-limit:]]

    # --- InteractionStore -----------------------------------------------------

    def recent_interactions(
        self,
        subject_id: str,
        source_id: str,
        limit: int = 10,
    ) -> list[datetime]:
        """Times the student was answered from the given source, newest first."""
        with self._lock:
            stamps = [
                m.created_at
                for s in self._sessions.values()
                if s.student_id == subject_id
                for m in s.messages
                if m.role == "assistant" and any(r.source_id == source_id for r in m.source_refs)
            ]
        stamps.sort(reverse=True)
        return stamps[:limit]

    # --- Analytics ------------------------------------------------------------

    def session_analytics(self, session_id: str) -> SessionAnalytics:
        with self._lock:
            session = self._require(session_id)
            messages = list(session.messages)
            started = session.created_at
            ended = session.last_activity

        ref_counts: Counter = Counter()
        titles: dict[str, str] = {}
        for m in messages:
            for ref in m.source_refs:
                ref_counts[ref.source_id] += 1
                titles.setdefault(ref.source_id, ref.source_title)

        response_times = [
            (b.created_at - a.created_at).total_seconds() * 1000
            for a, b in zip(messages, messages[1:])
            if a.role == "user" and b.role == "assistant"
        ]

        return SessionAnalytics(
            session_id=session_id,
            duration_minutes=round((ended - started).total_seconds() / 60, 2),
            message_count=len(messages),
            user_messages=sum(1 for m in messages if m.role == "user"),
            assistant_messages=sum(1 for m in messages if m.role == "assistant"),
            total_tokens=sum(m.input_tokens + m.output_tokens for m in messages),
            total_cost=sum(m.cost_usd for m in messages),
            sources_referenced=len(ref_counts),
            avg_response_time_ms=(
                sum(response_times) / len(response_times) if response_times else None
            ),
            most_referenced_sources=[
                {"source_id": sid, "source_title": titles[sid], "reference_count": count}
                for sid, count in ref_counts.most_common(MOST_REFERENCED_LIMIT)
            ],
        )

    def student_cost(self, student_id: str, period_days: int = 30) -> StudentCostSummary:
        """Cost summary over the student's sessions active in the last `period_days`."""
        since = self.clock() - timedelta(days=period_days)
        with self._lock:
            session_ids = [
                s.session_id for s in self._sessions.values()
                if s.student_id == student_id and s.last_activity >= since
            ]
        analytics = [self.session_analytics(sid) for sid in session_ids]
        return calculate_student_cost(analytics, student_id, period_days)

    # --- Export ---------------------------------------------------------------

    def export_session(self, session_id: str) -> dict:
        """Session, messages and analytics as a JSON-ready dict."""
        with self._lock:
            session = self._require(session_id)
            header = session.model_dump(mode="json", exclude={"messages"})
            messages = [
                {
                    "role": m.role,
                    "content": m.content,
                    "created_at": m.created_at.isoformat(),
                    "source_refs": [r.model_dump(mode="json") for r in m.source_refs],
                }
                for m in session.messages
            ]
        return {
            "session": header,
            "messages": messages,
            "analytics": self.session_analytics(session_id).model_dump(mode="json"),
            "exported_at": self.clock().isoformat(),
        }

    def export_session_markdown(self, session_id: str) -> str:
        with self._lock:
            session = self._require(session_id).model_copy(deep=True)
        analytics = self.session_analytics(session_id)

        lines = [
            f"# {session.title or 'Chat Session'}",
            "",
            f"**Created:** {session.created_at:%Y-%m-%d %H:%M} UTC",
            f"**Messages:** {analytics.message_count}",
            f"**Duration:** {analytics.duration_minutes:g} minutes",
            "",
            "---",
            "",
        ]
        for m in session.messages:
            speaker = "You" if m.role == "user" else "Assistant"
            lines += [f"### {speaker} ({m.created_at:%H:%M:%S})", "", m.content, ""]
            if m.source_refs:
                lines.append("**Video References:**")
                lines += [
                    f"- {r.source_title} at {format_timestamp(r.start_seconds)}"
                    for r in m.source_refs
                ]
                lines.append("")

        lines += ["---", "", f"*Exported on {self.clock():%Y-%m-%d %H:%M} UTC*", ""]
        return "\n".join(lines)

    # --- Persistence ----------------------------------------------------------

    def save(self, path: Path | None = None) -> None:
        target = Path(path) if path else (self.path or SESSIONS_PATH)
        with self._lock:
            payload = {"sessions": [s.model_dump(mode="json") for s in self._sessions.values()]}
        save_json(payload, target)
        logger.info(f"[Ledger] Saved {len(payload['sessions'])} sessions -> {target}")

    @classmethod
    def load(
        cls,
        path: Path = SESSIONS_PATH,
        clock: Callable[[], datetime] = utcnow,
    ) -> "SessionLedger":
        """Load a ledger file; a missing file yields an empty ledger bound to that path."""
        ledger = cls(path=path, clock=clock)
        path = Path(path)
        if not path.exists():
            return ledger

        raw = load_json(path)
        for s in raw.get("sessions", []):
            session = ChatSession(**s)
            ledger._sessions[session.session_id] = session
        logger.info(f"[Ledger] Loaded {len(ledger._sessions)} sessions from {path}")
        return ledger

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
