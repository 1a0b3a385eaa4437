import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from voicechat.errors import UnknownPersona


class Role(str, Enum):
	USER = "user"
	ASSISTANT = "assistant"


def _now() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
	role: Role
	text: str
	timestamp: datetime = field(default_factory=_now)
	audio: Optional[bytes] = None  # only on assistant replies that were synthesized

	@classmethod
	def user(cls, text: str) -> "Message":
		return cls(Role.USER, text)

	@classmethod
	def assistant(cls, text: str) -> "Message":
		return cls(Role.ASSISTANT, text)

	def to_chat(self) -> Dict[str, str]:
		"""The message as a chat-completion entry (no timestamp or audio)."""
		return {"role": self.role.value, "content": self.text}


class ConversationStore:
	"""Per-character message logs, kept in memory for the process lifetime.

    Logs are only ever appended to one complete message at a time, or cleared
    in full. Nothing is pruned automatically.
    """

	def __init__(self, persona_ids: Iterable[str]):
		self.lock = threading.Lock()
		self._logs: Dict[str, List[Message]] = {pid: [] for pid in persona_ids}

	def _log(self, persona_id: str) -> List[Message]:
		try:
			return self._logs[persona_id]
		except KeyError:
			raise UnknownPersona(persona_id) from None

	def append(self, persona_id: str, message: Message) -> None:
		with self.lock:
			self._log(persona_id).append(message)

	def snapshot(self, persona_id: str) -> List[Message]:
		with self.lock:
			return list(self._log(persona_id))

	def clear(self, persona_id: str) -> None:
		with self.lock:
			self._log(persona_id).clear()

	def pending_user_message(self, persona_id: str) -> Optional[Message]:
		"""The trailing user message if it has not been answered yet."""
		with self.lock:
			log = self._log(persona_id)
			if log and log[-1].role is Role.USER:
				return log[-1]
			return None

	def attach_audio(self, persona_id: str, text: str, audio: bytes) -> bool:
		"""Attach synthesized audio to the latest matching assistant reply.

    Returns False when no unvoiced reply with that text exists.
    """
		with self.lock:
			log = self._log(persona_id)
			for i in range(len(log) - 1, -1, -1):
				msg = log[i]
				if msg.role is Role.ASSISTANT and msg.audio is None and msg.text == text:
					log[i] = replace(msg, audio=audio)
					return True
			return False
