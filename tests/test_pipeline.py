import asyncio

import pytest
from openai import OpenAIError

from conftest import MP3_BYTES, WEBM_BYTES, FakeLLM
from voicechat.conversation import Message, Role
from voicechat.errors import (GenerationFailed, InvalidInput, SynthesisFailed,
                              TranscriptionFailed, UnknownPersona)
from voicechat.pipeline import Pipeline


def roles(store, persona_id):
	return [(m.role, m.text) for m in store.snapshot(persona_id)]


# --- transcribe ---


def test_transcribe_commits_user_message(pipeline, store, stt):
	transcript = asyncio.run(pipeline.transcribe(WEBM_BYTES, "joey"))

	assert transcript == "Hello there"
	assert stt.calls == [(WEBM_BYTES, None)]
	assert roles(store, "joey") == [(Role.USER, "Hello there")]


def test_transcribe_without_persona_stores_nothing(pipeline, store):
	assert asyncio.run(pipeline.transcribe(WEBM_BYTES)) == "Hello there"
	for persona_id in ("joey", "dwight", "dhruv"):
		assert store.snapshot(persona_id) == []


def test_transcribe_rejects_empty_audio(pipeline, stt):
	with pytest.raises(InvalidInput):
		asyncio.run(pipeline.transcribe(b"", "joey"))
	assert stt.calls == []


def test_transcribe_unknown_persona_skips_service(pipeline, stt):
	with pytest.raises(UnknownPersona):
		asyncio.run(pipeline.transcribe(WEBM_BYTES, "unknown"))
	assert stt.calls == []


def test_transcribe_failure(pipeline, store, stt):
	stt.error = OpenAIError("upstream down")
	with pytest.raises(TranscriptionFailed) as exc:
		asyncio.run(pipeline.transcribe(WEBM_BYTES, "joey"))
	assert exc.value.stage == "transcribe"
	assert exc.value.retryable
	assert store.snapshot("joey") == []


def test_silence_is_a_transcription_failure(pipeline, store, stt):
	stt.transcript = ""
	with pytest.raises(TranscriptionFailed):
		asyncio.run(pipeline.transcribe(WEBM_BYTES, "joey"))
	assert store.snapshot("joey") == []


# --- respond ---


def test_respond_sends_instruction_history_and_text(pipeline, store, llm, registry):
	store.append("joey", Message.user("Hi"))
	store.append("joey", Message.assistant("Hey!"))

	reply = asyncio.run(pipeline.respond("joey", "How are you?"))

	assert reply == "How you doin'?"
	assert llm.calls == [[
	    {"role": "system", "content": registry.get("joey").instruction},
	    {"role": "user", "content": "Hi"},
	    {"role": "assistant", "content": "Hey!"},
	    {"role": "user", "content": "How are you?"},
	]]
	assert roles(store, "joey")[-2:] == [
	    (Role.USER, "How are you?"),
	    (Role.ASSISTANT, "How you doin'?"),
	]


def test_respond_reuses_transcribed_message(pipeline, store, llm):
	asyncio.run(pipeline.transcribe(WEBM_BYTES, "joey"))
	asyncio.run(pipeline.respond("joey", "Hello there"))

	assert roles(store, "joey") == [
	    (Role.USER, "Hello there"),
	    (Role.ASSISTANT, "How you doin'?"),
	]
	# The pending message is the new input, not part of the history.
	assert [m["role"] for m in llm.calls[0]] == ["system", "user"]


def test_generation_failure_keeps_user_message(pipeline, store, llm):
	llm.error = OpenAIError("rate limited")
	with pytest.raises(GenerationFailed) as exc:
		asyncio.run(pipeline.respond("joey", "Hello"))
	assert exc.value.stage == "respond"
	assert roles(store, "joey") == [(Role.USER, "Hello")]

	llm.error = None
	asyncio.run(pipeline.respond("joey", "Hello"))
	assert roles(store, "joey") == [
	    (Role.USER, "Hello"),
	    (Role.ASSISTANT, "How you doin'?"),
	]


def test_empty_reply_is_a_generation_failure(pipeline, store, llm):
	llm.reply = ""
	with pytest.raises(GenerationFailed):
		asyncio.run(pipeline.respond("joey", "Hello"))
	assert roles(store, "joey") == [(Role.USER, "Hello")]


def test_respond_rejects_bad_input(pipeline, store, llm):
	with pytest.raises(UnknownPersona):
		asyncio.run(pipeline.respond("unknown", "Hello"))
	with pytest.raises(InvalidInput):
		asyncio.run(pipeline.respond("joey", "   "))
	assert llm.calls == []
	assert store.snapshot("joey") == []


def test_conversations_are_isolated(pipeline, store):
	asyncio.run(pipeline.respond("joey", "Hi Joey"))
	asyncio.run(pipeline.respond("dwight", "Hi Dwight"))

	assert roles(store, "joey")[0] == (Role.USER, "Hi Joey")
	assert roles(store, "dwight")[0] == (Role.USER, "Hi Dwight")
	assert store.snapshot("dhruv") == []


def test_history_window(registry, store, stt, llm, tts):
	pipeline = Pipeline(registry, store, stt=stt, llm=llm, tts=tts, max_history_turns=1)
	for text in ("one", "two", "three"):
		asyncio.run(pipeline.respond("dwight", text))

	assert len(store.snapshot("dwight")) == 6
	sent = llm.calls[-1]
	assert [m["content"] for m in sent[1:]] == ["two", "How you doin'?", "three"]


def test_each_turn_adds_two_messages(pipeline, store):
	for i in range(4):
		asyncio.run(pipeline.respond("dhruv", f"question {i}"))
		assert len(store.snapshot("dhruv")) == 2 * (i + 1)


# --- speak ---


def test_speak_uses_persona_voice_and_attaches_audio(pipeline, store, tts):
	reply = asyncio.run(pipeline.respond("dwight", "Bears?"))
	audio = asyncio.run(pipeline.speak("dwight", reply))

	assert audio == MP3_BYTES
	assert tts.calls == [(reply, "echo")]
	assert store.snapshot("dwight")[-1].audio == MP3_BYTES


def test_synthesis_failure_leaves_text_reply(pipeline, store, tts):
	reply = asyncio.run(pipeline.respond("dwight", "Bears?"))
	tts.error = OpenAIError("tts down")

	with pytest.raises(SynthesisFailed) as exc:
		asyncio.run(pipeline.speak("dwight", reply))
	assert exc.value.stage == "speak"
	last = store.snapshot("dwight")[-1]
	assert last.text == reply
	assert last.audio is None


def test_speak_rejects_bad_input(pipeline, tts):
	with pytest.raises(InvalidInput):
		asyncio.run(pipeline.speak("joey", ""))
	with pytest.raises(UnknownPersona):
		asyncio.run(pipeline.speak("unknown", "hi"))
	assert tts.calls == []


def test_speak_text_outside_conversation(pipeline, store):
	assert asyncio.run(pipeline.speak("joey", "Just words")) == MP3_BYTES
	assert store.snapshot("joey") == []


# --- run_turn ---


def test_run_turn(pipeline, store):
	result = asyncio.run(pipeline.run_turn("joey", WEBM_BYTES))

	assert result.transcript == "Hello there"
	assert result.reply == "How you doin'?"
	assert result.audio == MP3_BYTES
	assert result.error is None
	log = store.snapshot("joey")
	assert [m.role for m in log] == [Role.USER, Role.ASSISTANT]
	assert log[1].audio == MP3_BYTES


def test_run_turn_degrades_without_audio(pipeline, store, tts):
	tts.error = OpenAIError("tts down")
	result = asyncio.run(pipeline.run_turn("joey", WEBM_BYTES))

	assert result.reply == "How you doin'?"
	assert result.audio is None
	assert "tts down" in result.error
	assert len(store.snapshot("joey")) == 2


def test_run_turn_stops_at_failed_generation(pipeline, store, llm, tts):
	llm.error = OpenAIError("rate limited")
	with pytest.raises(GenerationFailed):
		asyncio.run(pipeline.run_turn("joey", WEBM_BYTES))
	assert tts.calls == []
	assert roles(store, "joey") == [(Role.USER, "Hello there")]


# --- same-persona serialization ---


class GatedLLM:
	"""Replies "re: <text>"; generation for a gated text waits for its event."""
	build_messages = staticmethod(FakeLLM.build_messages)

	def __init__(self):
		self.gates = {}
		self.started = []

	async def generate(self, messages):
		text = messages[-1]["content"]
		self.started.append(text)
		if text in self.gates:
			await self.gates[text].wait()
		return f"re: {text}"


async def settle():
	for _ in range(5):
		await asyncio.sleep(0)


@pytest.fixture
def gated_llm():
	return GatedLLM()


@pytest.fixture
def gated_pipeline(registry, store, stt, gated_llm, tts):
	return Pipeline(registry, store, stt=stt, llm=gated_llm, tts=tts)


def test_same_persona_replies_run_in_start_order(gated_pipeline, gated_llm, store):

	async def scenario():
		gated_llm.gates["a"] = asyncio.Event()
		first = asyncio.create_task(gated_pipeline.respond("joey", "a"))
		await settle()
		second = asyncio.create_task(gated_pipeline.respond("joey", "b"))
		await settle()
		assert gated_llm.started == ["a"]

		gated_llm.gates["a"].set()
		return await asyncio.gather(first, second)

	assert asyncio.run(scenario()) == ["re: a", "re: b"]
	assert gated_llm.started == ["a", "b"]
	assert roles(store, "joey") == [
	    (Role.USER, "a"),
	    (Role.ASSISTANT, "re: a"),
	    (Role.USER, "b"),
	    (Role.ASSISTANT, "re: b"),
	]


def test_transcript_waits_for_reply_in_flight(gated_pipeline, gated_llm, store, stt):

	async def scenario():
		gated_llm.gates["one"] = asyncio.Event()
		reply = asyncio.create_task(gated_pipeline.respond("joey", "one"))
		await settle()

		stt.transcript = "two"
		commit = asyncio.create_task(gated_pipeline.transcribe(WEBM_BYTES, "joey"))
		await settle()
		assert roles(store, "joey") == [(Role.USER, "one")]

		gated_llm.gates["one"].set()
		await asyncio.gather(reply, commit)
		await gated_pipeline.respond("joey", "two")

	asyncio.run(scenario())
	assert roles(store, "joey") == [
	    (Role.USER, "one"),
	    (Role.ASSISTANT, "re: one"),
	    (Role.USER, "two"),
	    (Role.ASSISTANT, "re: two"),
	]


def test_other_personas_do_not_wait(gated_pipeline, gated_llm, store):

	async def scenario():
		gated_llm.gates["slow"] = asyncio.Event()
		joey = asyncio.create_task(gated_pipeline.respond("joey", "slow"))
		await settle()

		assert await asyncio.wait_for(gated_pipeline.respond("dwight", "fast"), 1) == "re: fast"
		assert not joey.done()
		assert roles(store, "dwight") == [(Role.USER, "fast"), (Role.ASSISTANT, "re: fast")]

		gated_llm.gates["slow"].set()
		return await joey

	assert asyncio.run(scenario()) == "re: slow"
	assert len(store.snapshot("joey")) == 2
