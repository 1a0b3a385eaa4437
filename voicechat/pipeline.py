"""One user turn: transcribe -> respond -> speak.

Each stage calls one remote service and is awaited in sequence. A stage only
catches its own service's errors and re-raises them as the stage's failure
type. The conversation store is written on stage success only:

- the user message lands as soon as a transcript exists for a character
  (or when ``respond`` is called with new text),
- the assistant reply lands once generation succeeds,
- the reply's audio is attached once synthesis succeeds.

So a failed generation leaves an unanswered user message (which a retry of
``respond`` with the same text picks up again) and a failed synthesis leaves a
text-only reply.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from openai import OpenAIError

import config as cfg
import voicechat.llm as llm
import voicechat.stt as stt
import voicechat.tts as tts
from voicechat.conversation import ConversationStore, Message
from voicechat.errors import (GenerationFailed, InvalidInput, SynthesisFailed,
                              TranscriptionFailed)
from voicechat.personas import PersonaRegistry

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
	transcript: str
	reply: str
	audio: Optional[bytes] = None
	error: Optional[str] = None  # set when the reply could not be voiced


class Pipeline:

	def __init__(self,
	             registry: PersonaRegistry,
	             store: ConversationStore,
	             stt=stt,
	             llm=llm,
	             tts=tts,
	             max_history_turns: int = cfg.MAX_HISTORY_TURNS):
		self.registry = registry
		self.store = store
		self.stt = stt
		self.llm = llm
		self.tts = tts
		self.max_history_turns = max_history_turns
		self._locks: Dict[str, asyncio.Lock] = {}

	def init(self):
		self.stt.init()
		self.llm.init()
		self.tts.init()

	async def unload(self):
		await self.stt.unload()
		await self.llm.unload()
		await self.tts.unload()

	def _lock_for(self, persona_id: str) -> asyncio.Lock:
		lock = self._locks.get(persona_id)
		if lock is None:
			lock = self._locks[persona_id] = asyncio.Lock()
		return lock

	def _context(self, history: List[Message]) -> List[Dict[str, str]]:
		if self.max_history_turns > 0:
			history = history[-2 * self.max_history_turns:]
		return [m.to_chat() for m in history]

	# --- Stages ---

	async def transcribe(self,
	                     audio: bytes,
	                     persona_id: str | None = None,
	                     filename: str | None = None) -> str:
		"""Audio in, transcript out.

        With a ``persona_id`` the transcript is also committed to that
        character's conversation right away.
        """
		if not audio:
			raise InvalidInput("No audio provided")
		if persona_id is not None:
			self.registry.get(persona_id)

		try:
			transcript = await self.stt.generate(audio, filename=filename)
		except OpenAIError as e:
			logger.exception("[TRANSCRIBE] Error")
			raise TranscriptionFailed(str(e)) from e
		if not transcript:
			raise TranscriptionFailed("No speech detected in audio")

		logger.info("[TRANSCRIBE] Success: %s", transcript)
		if persona_id is not None:
			# Waits for an in-flight reply so it lands after that reply.
			async with self._lock_for(persona_id):
				self.store.append(persona_id, Message.user(transcript))
		return transcript

	async def respond(self, persona_id: str, user_text: str) -> str:
		persona = self.registry.get(persona_id)
		user_text = (user_text or "").strip()
		if not user_text:
			raise InvalidInput("Missing userMessage")

		async with self._lock_for(persona_id):
			history = self.store.snapshot(persona_id)
			pending = self.store.pending_user_message(persona_id)
			if pending is not None and pending.text == user_text:
				# Already stored by transcribe, or left by a failed attempt.
				history = history[:-1]
			else:
				self.store.append(persona_id, Message.user(user_text))

			messages = self.llm.build_messages(persona.instruction,
			                                   self._context(history), user_text)
			logger.info("[RESPOND] Generating response from %s (%d messages)...",
			            persona_id, len(messages))
			try:
				reply = await self.llm.generate(messages)
			except OpenAIError as e:
				logger.exception("[RESPOND] Error")
				raise GenerationFailed(str(e)) from e
			if not reply:
				raise GenerationFailed("The model returned an empty response")

			self.store.append(persona_id, Message.assistant(reply))

		logger.info('[RESPOND] Response: "%s"', reply)
		return reply

	async def speak(self, persona_id: str, text: str) -> bytes:
		persona = self.registry.get(persona_id)
		text = (text or "").strip()
		if not text:
			raise InvalidInput("Missing text")

		try:
			audio = await self.tts.generate(text, voice=persona.voice_id)
		except OpenAIError as e:
			logger.exception("[TTS] Error")
			raise SynthesisFailed(str(e)) from e
		if not audio:
			raise SynthesisFailed("The service returned no audio")

		self.store.attach_audio(persona_id, text, audio)
		logger.info("[TTS] Audio generated, size: %d", len(audio))
		return audio

	# --- Whole turn ---

	async def run_turn(self,
	                   persona_id: str,
	                   audio: bytes,
	                   filename: str | None = None) -> TurnResult:
		"""All three stages. Synthesis failure degrades to a text-only result."""
		transcript = await self.transcribe(audio, persona_id, filename=filename)
		reply = await self.respond(persona_id, transcript)
		try:
			speech = await self.speak(persona_id, reply)
		except SynthesisFailed as e:
			logger.warning("Turn for %s finished without audio: %s", persona_id, e)
			return TurnResult(transcript, reply, error=str(e))
		return TurnResult(transcript, reply, audio=speech)
