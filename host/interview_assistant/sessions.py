# interview_assistant/sessions.py
"""
Interview session stores: an in-process store and a client for the REST backend
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .errors import SessionNotFound, SessionAlreadyEnded, SessionError
from .interviews import Question, get_interview_type
from .model_providers import ControlSignal
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)

ACTIVE = "active"
ENDED_BY_INTERVIEWER = "ended_by_interviewer"
COMPLETED = "completed"
FINISHED_STATUSES = (ENDED_BY_INTERVIEWER, COMPLETED)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionStatus:
    status: str
    end_reason: Optional[str] = None

    @property
    def ended(self) -> bool:
        return self.status in FINISHED_STATUSES


@dataclass
class Session:
    session_id: str
    interview_type: str
    welcome_message: str = ""
    status: str = ACTIVE
    current_question: Optional[Question] = None
    used_questions: List[str] = field(default_factory=list)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    ended_at: Optional[str] = None
    end_reason: Optional[str] = None


class SessionStore(ABC):
    """Append-only remote log of the interview plus its status"""

    @abstractmethod
    async def create_session(self, interview_type: str) -> Session:
        pass

    @abstractmethod
    async def append_message(
        self,
        session_id: str,
        speaker: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    async def get_status(self, session_id: str) -> SessionStatus:
        pass

    @abstractmethod
    async def end_session(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def get_system_prompt(self, session_id: str) -> str:
        """System prompt the backend holds for this session"""
        pass

    @abstractmethod
    async def apply_control_signal(self, session_id: str, signal: ControlSignal) -> Optional[str]:
        """Apply a control signal; returns text for the system log, if any"""
        pass


class InMemorySessionStore(SessionStore):
    """Sessions kept in this process"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.sessions: Dict[str, Session] = {}
        self.rng = rng or random.Random()

    def _get(self, session_id: str) -> Session:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"Session not found: {session_id}")

    def _pick_question(self, interview_type: str, exclude: List[str]) -> Optional[Question]:
        available = [q for q in get_interview_type(interview_type).questions if q.id not in exclude]
        if not available:
            return None
        return self.rng.choice(available)

    async def create_session(self, interview_type: str) -> Session:
        try:
            interview = get_interview_type(interview_type)
        except ValueError as e:
            raise SessionError(str(e), cause=e) from e
        question = self._pick_question(interview_type, [])

        session = Session(session_id=uuid.uuid4().hex, interview_type=interview_type)
        session.welcome_message = interview.welcome
        if question is not None:
            session.current_question = question
            session.used_questions.append(question.id)
            session.welcome_message = f"{interview.welcome} {question.text}"

        session.messages.append({
            "role": "interviewer",
            "text": session.welcome_message,
            "timestamp": session.created_at,
            "metadata": {"type": "welcome", "questionId": question.id if question else None},
        })
        self.sessions[session.session_id] = session
        logger.info(f"Created {interview_type} session {session.session_id}")
        return session

    async def append_message(self, session_id, speaker, text, metadata=None) -> None:
        session = self._get(session_id)
        # the interviewer's closing reply may still be recorded
        if speaker == "candidate" and session.status in FINISHED_STATUSES:
            raise SessionAlreadyEnded(f"Session {session_id} is {session.status}")
        session.messages.append({
            "role": speaker,
            "text": text,
            "timestamp": _now(),
            "metadata": dict(metadata or {}),
        })

    async def get_status(self, session_id: str) -> SessionStatus:
        session = self._get(session_id)
        return SessionStatus(status=session.status, end_reason=session.end_reason)

    async def end_session(self, session_id: str) -> None:
        session = self._get(session_id)
        if session.status == ACTIVE:
            session.ended_at = _now()
        session.status = COMPLETED
        logger.info(f"Session {session_id} completed")

    async def get_system_prompt(self, session_id: str) -> str:
        session = self._get(session_id)
        prompt = get_interview_type(session.interview_type).system_prompt
        if session.current_question is not None:
            prompt += f"\n\nCurrent question: {session.current_question.text}"
        return prompt

    async def apply_control_signal(self, session_id: str, signal: ControlSignal) -> Optional[str]:
        session = self._get(session_id)

        if signal.kind == "switch_question":
            question = self._pick_question(session.interview_type, session.used_questions)
            if question is None:
                logger.warning(f"No unused questions left for session {session_id}; keeping current question")
                return None
            session.current_question = question
            session.used_questions.append(question.id)
            text = f"Question switched: {question.text}"
            metadata = {"command": "SWITCH_QUESTION", "questionId": question.id, "reason": signal.reason}

        elif signal.kind == "end_interview":
            session.status = ENDED_BY_INTERVIEWER
            session.ended_at = _now()
            session.end_reason = signal.reason
            text = f"Interview ended by interviewer: {signal.reason}"
            metadata = {"command": "END_INTERVIEW", "reason": signal.reason}

        else:
            logger.warning(f"Unknown control signal: {signal.kind}")
            return None

        session.messages.append({"role": "system", "text": text, "timestamp": _now(), "metadata": metadata})
        return text


class HttpSessionStore(SessionStore):
    """Client for the interview backend's REST API"""

    def __init__(self, base_url: str = "http://localhost:3001", timeout: float = 10, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.interview_types: Dict[str, str] = {}
        self._prompts: Dict[str, str] = {}

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SessionError(f"{method} {path} failed: {e}", cause=e) from e

        if response.status_code == 404:
            raise SessionNotFound(f"{method} {path}: not found")
        try:
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise SessionError(f"{method} {path} failed: {e}", cause=e) from e

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._request(method, path, **kwargs))

    async def create_session(self, interview_type: str) -> Session:
        data = await retry_with_backoff(
            lambda: self._call("POST", "/api/interviews/sessions", json={"interviewType": interview_type}),
            max_retries=2,
            retry_on=(SessionError,),
        )
        session = Session(
            session_id=data["sessionId"],
            interview_type=data.get("interviewType", interview_type),
            welcome_message=data.get("welcomeMessage", ""),
            created_at=data.get("createdAt") or _now(),
        )
        self.interview_types[session.session_id] = session.interview_type
        logger.info(f"Created backend session {session.session_id}")
        return session

    async def append_message(self, session_id, speaker, text, metadata=None) -> None:
        await self._call(
            "POST",
            f"/api/interviews/sessions/{session_id}/messages",
            json={"role": speaker, "text": text, "metadata": metadata or {}},
        )

    async def get_status(self, session_id: str) -> SessionStatus:
        data = await self._call("GET", f"/api/interviews/sessions/{session_id}/status")
        return SessionStatus(status=data.get("status", ACTIVE), end_reason=data.get("endReason"))

    async def end_session(self, session_id: str) -> None:
        await self._call("DELETE", f"/api/interviews/sessions/{session_id}")

    async def get_system_prompt(self, session_id: str) -> str:
        interview_type = self.interview_types.get(session_id)
        if interview_type is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        if interview_type not in self._prompts:
            data = await self._call("GET", f"/api/interviews/{interview_type}")
            try:
                self._prompts[interview_type] = data["data"]["configuration"]["systemPrompt"]
            except (KeyError, TypeError) as e:
                raise SessionError(f"Malformed interview configuration for {interview_type}", cause=e) from e
        return self._prompts[interview_type]

    async def apply_control_signal(self, session_id: str, signal: ControlSignal) -> Optional[str]:
        # The backend exposes no command endpoint, so the signal is recorded as a system message
        if signal.kind == "switch_question":
            text = f"Question switch requested: {signal.reason}"
        elif signal.kind == "end_interview":
            text = f"Interview ended by interviewer: {signal.reason}"
        else:
            logger.warning(f"Unknown control signal: {signal.kind}")
            return None
        await self.append_message(
            session_id, "system", text,
            {"command": signal.kind.upper(), "reason": signal.reason},
        )
        return text


def create_session_store(config) -> SessionStore:
    if config.session_backend == "http":
        return HttpSessionStore(config.backend_url, timeout=config.backend_timeout)
    if config.session_backend != "memory":
        logger.warning(f"Unknown session backend {config.session_backend!r}, using in-memory store")
    return InMemorySessionStore()
