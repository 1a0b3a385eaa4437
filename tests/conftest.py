import pytest
from fastapi.testclient import TestClient

import config as cfg
import main_api
import voicechat.llm as llm_module
from voicechat.conversation import ConversationStore
from voicechat.personas import PersonaRegistry, load_personas
from voicechat.pipeline import Pipeline

MP3_BYTES = b"ID3\x03\x00fake-mp3-payload"
WEBM_BYTES = b"\x1aE\xdf\xa3fake-webm-payload"


class FakeSTT:

	def __init__(self, transcript="Hello there"):
		self.transcript = transcript
		self.error = None
		self.calls = []

	def init(self):
		pass

	async def unload(self):
		pass

	async def generate(self, audio, filename=None):
		self.calls.append((audio, filename))
		if self.error:
			raise self.error
		return self.transcript


class FakeLLM:
	build_messages = staticmethod(llm_module.build_messages)

	def __init__(self, reply="How you doin'?"):
		self.reply = reply
		self.error = None
		self.calls = []

	def init(self):
		pass

	async def unload(self):
		pass

	async def generate(self, messages):
		self.calls.append(messages)
		if self.error:
			raise self.error
		return self.reply


class FakeTTS:

	def __init__(self, audio=MP3_BYTES):
		self.audio = audio
		self.error = None
		self.calls = []

	def init(self):
		pass

	async def unload(self):
		pass

	async def generate(self, text, voice="alloy"):
		self.calls.append((text, voice))
		if self.error:
			raise self.error
		return self.audio


@pytest.fixture
def registry():
	return PersonaRegistry(load_personas(cfg.CHARACTERS_DIR))


@pytest.fixture
def store(registry):
	return ConversationStore(registry.ids)


@pytest.fixture
def stt():
	return FakeSTT()


@pytest.fixture
def llm():
	return FakeLLM()


@pytest.fixture
def tts():
	return FakeTTS()


@pytest.fixture
def pipeline(registry, store, stt, llm, tts):
	return Pipeline(registry, store, stt=stt, llm=llm, tts=tts, max_history_turns=0)


@pytest.fixture
def client(pipeline):
	return TestClient(main_api.create_app(pipeline))
