# interview_assistant/conversation.py
"""
Utterances and the append-only conversation log
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Speaker(str, Enum):
    CANDIDATE = "candidate"
    INTERVIEWER = "interviewer"
    SYSTEM = "system"


# Chat roles used when the log is sent to the completion provider
CHAT_ROLES = {
    Speaker.CANDIDATE: "user",
    Speaker.INTERVIEWER: "assistant",
    Speaker.SYSTEM: "system",
}


@dataclass
class Utterance:
    """One speaker's contribution within a turn"""
    speaker: Speaker
    text: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    interrupted: bool = False
    is_interruption: bool = False
    final: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "Utterance":
        return dataclasses.replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "speaker": self.speaker.value,
            "text": self.text,
            "createdAt": self.created_at.isoformat(),
            "interrupted": self.interrupted,
            "isInterruption": self.is_interruption,
        }


class ConversationLog:
    """
    Ordered record of utterances. Insertion order is chronological order.

    Only the last utterance may be in progress (final=False); its text can be
    updated until freeze_last() is called. Nothing is ever removed.
    """

    def __init__(self):
        self._utterances: List[Utterance] = []

    def __len__(self) -> int:
        return len(self._utterances)

    @property
    def last(self) -> Optional[Utterance]:
        return self._utterances[-1] if self._utterances else None

    @property
    def in_progress(self) -> bool:
        last = self.last
        return last is not None and not last.final

    def append(self, utterance: Utterance) -> Utterance:
        if self.in_progress:
            raise ValueError("Cannot append while the last utterance is still in progress")
        self._utterances.append(utterance)
        logger.debug(f"Appended {utterance.speaker.value} utterance {utterance.id} (final={utterance.final})")
        return utterance

    def update_last_text(self, text: str) -> None:
        if not self.in_progress:
            raise ValueError("No utterance in progress to update")
        self._utterances[-1].text = text

    def freeze_last(self, text: Optional[str] = None) -> Utterance:
        if not self.in_progress:
            raise ValueError("No utterance in progress to freeze")
        last = self._utterances[-1]
        if text is not None:
            last.text = text
        last.final = True
        return last

    def mark_last_interrupted(self) -> Optional[Utterance]:
        """Mark the most recent interviewer utterance as cut off"""
        for utterance in reversed(self._utterances):
            if utterance.speaker == Speaker.INTERVIEWER:
                utterance.interrupted = True
                return utterance
        return None

    def snapshot(self) -> List[Utterance]:
        """Read-only copy for rendering or backend sync"""
        return [u.copy() for u in self._utterances]

    def to_chat_messages(self) -> List[Dict[str, str]]:
        """Finished utterances as chat-completion messages"""
        return [
            {"role": CHAT_ROLES[u.speaker], "content": u.text}
            for u in self._utterances
            if u.final and u.text.strip()
        ]
