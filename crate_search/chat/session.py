"""
Conversation Session - ordered chat history for one conversation.

History is append-only. Retrieved crate context is attached for the current
turn only: it is placed right before the latest user message in `snapshot()`
until the assistant answer is appended or the context is discarded, and it is
never written into the history itself.
"""

import uuid
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .prompts import CONTEXT_INSTRUCTIONS, SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ConversationSession:
    """
    One conversation with the assistant.

    A session must not be used by two concurrent chat calls; callers serialize
    access (one session per conversation).
    """

    def __init__(
        self,
        system_prompt: str = SYSTEM_PROMPT,
        max_history: Optional[int] = None,
        session_id: Optional[str] = None,
    ):
        """
        Args:
            system_prompt: Leading system message of every snapshot
            max_history: Send at most this many recent history messages upstream
                (None sends everything). History itself is never trimmed.
            session_id: Identifier, random when omitted
        """
        if max_history is not None and max_history < 1:
            raise ValueError(f"max_history must be >= 1, got {max_history}")

        self.session_id = session_id or uuid.uuid4().hex
        self.system_prompt = system_prompt
        self.max_history = max_history
        self._history: List[Message] = []
        self._pending_context: Optional[Message] = None

    def __len__(self) -> int:
        return len(self._history)

    @property
    def history(self) -> Tuple[Message, ...]:
        return tuple(self._history)

    @property
    def has_pending_context(self) -> bool:
        return self._pending_context is not None

    @property
    def unanswered_user_message(self) -> Optional[Message]:
        """Last history message when it is a user message with no answer yet."""
        if self._history and self._history[-1].role is Role.USER:
            return self._history[-1]
        return None

    def append_user(self, text: str) -> Message:
        message = Message(Role.USER, text)
        self._history.append(message)
        return message

    def append_assistant(self, text: str) -> Message:
        message = Message(Role.ASSISTANT, text)
        self._history.append(message)
        # The turn is complete, its context is no longer needed
        self._pending_context = None
        return message

    def inject_context(self, snippets: Sequence[str]) -> Optional[Message]:
        """
        Attach retrieved crate snippets to the current turn.

        Replaces any previously injected context. An empty sequence clears it.

        Raises:
            ValueError: If no user message has been appended yet
        """
        if self._latest_user_index() is None:
            raise ValueError("Cannot inject context before the first user message")

        if not snippets:
            self._pending_context = None
            return None

        content = "\n".join(snippets) + "\n\n" + CONTEXT_INSTRUCTIONS
        self._pending_context = Message(Role.SYSTEM, content)
        logger.debug(
            f"📎 Context injected into session {self.session_id}: {len(snippets)} snippet(s)"
        )
        return self._pending_context

    def discard_context(self) -> None:
        self._pending_context = None

    def _latest_user_index(self) -> Optional[int]:
        for index in range(len(self._history) - 1, -1, -1):
            if self._history[index].role is Role.USER:
                return index
        return None

    def snapshot(self) -> List[Message]:
        """
        Messages for the next model call.

        Order: system prompt, history in call order (windowed by `max_history`,
        never dropping the latest user message), with the pending context
        placed immediately before the latest user message.
        """
        latest_user = self._latest_user_index()

        start = 0
        if self.max_history is not None:
            start = max(0, len(self._history) - self.max_history)
            if latest_user is not None and latest_user < start:
                start = latest_user

        messages = [Message(Role.SYSTEM, self.system_prompt)]
        for index in range(start, len(self._history)):
            if index == latest_user and self._pending_context is not None:
                messages.append(self._pending_context)
            messages.append(self._history[index])
        return messages

    def to_payload(self) -> List[Dict[str, str]]:
        """Snapshot as provider-ready `{"role", "content"}` dicts."""
        return [message.to_dict() for message in self.snapshot()]
