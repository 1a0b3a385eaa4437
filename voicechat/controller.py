"""Client-side recording and playback state machine.

Capture:   Idle -> Recording -> Processing -> Idle
Playback:  nothing playing, or exactly one chat entry playing

The controller talks to the backend through a BackendClient-like object and
drives a recorder (``open``/``start``/``stop``) and a player
(``play(audio, on_finished)``/``stop``). Audio hardware lives in
``voicechat.audio``; tests pass fakes.
"""
import base64
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from voicechat.errors import BackendError, MicrophonePermissionDenied

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
	IDLE = "Idle"
	RECORDING = "Recording"
	PROCESSING = "Processing"


@dataclass
class ChatEntry:
	role: str
	text: str
	audio: Optional[bytes] = None


class Controller:

	def __init__(self,
	             backend,
	             recorder,
	             player,
	             on_status: Callable[[str], None] | None = None):
		self.backend = backend
		self.recorder = recorder
		self.player = player
		self.on_status = on_status
		self.lock = threading.RLock()

		self.state = CaptureState.IDLE
		self.status = ""
		self.personas: List[Dict[str, str]] = []
		self.persona_id: str | None = None
		self.entries: List[ChatEntry] = []
		self.playing: int | None = None  # index into entries
		self._playback_token = 0

	# --- Status & Characters ---

	def _set_status(self, message: str):
		self.status = message
		logger.info("[Status] %s", message)
		if self.on_status:
			self.on_status(message)

	@property
	def persona(self) -> Dict[str, str] | None:
		for p in self.personas:
			if p["id"] == self.persona_id:
				return p
		return None

	def load_personas(self) -> List[Dict[str, str]]:
		"""Fetches the character list and selects the first one if none is active."""
		self.personas = self.backend.personas()
		if self.persona_id is None and self.personas:
			self.switch_persona(self.personas[0]["id"])
		return self.personas

	def switch_persona(self, persona_id: str) -> bool:
		"""Loads another character's conversation. Only allowed while idle."""
		with self.lock:
			if self.state is not CaptureState.IDLE:
				logger.warning("Ignoring character switch while %s", self.state.value)
				return False
		try:
			history = self.backend.history(persona_id)
		except BackendError as e:
			self._set_status(f"Error: {e}")
			return False

		self.stop_playback()
		with self.lock:
			self.persona_id = persona_id
			self.entries = [
			    ChatEntry(m["role"], m["text"],
			              base64.b64decode(m["audio"]) if m.get("audio") else None)
			    for m in history
			]
		return True

	def clear(self) -> bool:
		if self.persona_id is None:
			return False
		try:
			self.backend.reset(self.persona_id)
		except BackendError as e:
			self._set_status(f"Error: {e}")
			return False
		self.stop_playback()
		with self.lock:
			self.entries = []
		self._set_status("Chat history cleared")
		return True

	# --- Capture ---

	def start_recording(self) -> bool:
		with self.lock:
			if self.state is not CaptureState.IDLE:
				return False
			try:
				self.recorder.open()  # no-op once the microphone is held
				self.recorder.start()
			except MicrophonePermissionDenied as e:
				logger.error("Microphone access denied: %s", e)
				self._set_status("Please allow microphone access to use this app")
				return False
			self.state = CaptureState.RECORDING
		self._set_status("Recording... speak now")
		return True

	def stop_recording(self) -> bytes | None:
		"""Stops capture and returns the recorded audio for ``process``."""
		with self.lock:
			if self.state is not CaptureState.RECORDING:
				return None
			audio = self.recorder.stop()
			self.state = CaptureState.PROCESSING
		self._set_status("Processing audio...")
		return audio

	def process(self, audio: bytes | None) -> bool:
		"""Transcribe -> respond -> speak. Always ends back in Idle."""
		try:
			if not audio:
				self._set_status("No audio recorded.")
				return False
			persona_id = self.persona_id
			name = (self.persona or {}).get("displayName", "Character")

			self._set_status("Transcribing...")
			transcript = self.backend.transcribe(audio, persona_id)
			with self.lock:
				self.entries.append(ChatEntry("user", transcript))

			self._set_status(f"{name} is thinking...")
			reply = self.backend.respond(persona_id, transcript)
			entry = ChatEntry("assistant", reply)
			with self.lock:
				self.entries.append(entry)

			self._set_status("Generating voice...")
			entry.audio = self.backend.speak(persona_id, reply)
			self._set_status("")
			return True
		except BackendError as e:
			self._set_status(f"Error: {e}")
			return False
		finally:
			with self.lock:
				self.state = CaptureState.IDLE

	# --- Playback ---

	def toggle_playback(self, index: int) -> bool:
		"""Plays entry ``index``, or stops it if it is the one playing.

        Returns True when playback started.
        """
		with self.lock:
			entry = self.entries[index]
			if entry.audio is None:
				return False
			if self.playing == index:
				self._stop_playback_locked()
				return False
			self._stop_playback_locked()
			self._playback_token += 1
			token = self._playback_token
			self.playing = index
		self.player.play(entry.audio,
		                 on_finished=lambda: self._playback_finished(token))
		return True

	def play_last_reply(self) -> bool:
		for i in range(len(self.entries) - 1, -1, -1):
			if self.entries[i].role == "assistant" and self.entries[i].audio:
				return self.toggle_playback(i)
		return False

	def stop_playback(self):
		with self.lock:
			self._stop_playback_locked()

	def _stop_playback_locked(self):
		if self.playing is None:
			return
		self._playback_token += 1
		self.playing = None
		self.player.stop()

	def _playback_finished(self, token: int):
		with self.lock:
			# Stale callbacks from a stopped or replaced playback are ignored.
			if token == self._playback_token:
				self.playing = None
