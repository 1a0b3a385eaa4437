import logging
import time

from openai import AsyncOpenAI

import config as cfg
from voicechat.errors import ConfigurationError

logger = logging.getLogger(__name__)

client: AsyncOpenAI | None = None

# (magic bytes, offset, filename) used to name the upload; the service picks
# its decoder from the extension.
_SIGNATURES = [
    (b'RIFF', 0, 'audio.wav'),
    (b'\x1aE\xdf\xa3', 0, 'audio.webm'),
    (b'OggS', 0, 'audio.ogg'),
    (b'ID3', 0, 'audio.mp3'),
    (b'\xff\xfb', 0, 'audio.mp3'),
    (b'ftyp', 4, 'audio.mp4'),
]
DEFAULT_FILENAME = 'audio.webm'  # what browsers' MediaRecorder produces


def init(api_key: str | None = None):
	global client
	api_key = api_key or cfg.OPENAI_API_KEY
	if not api_key:
		logger.warning("OPENAI_API_KEY is not set; transcription is disabled")
		client = None
		return
	client = AsyncOpenAI(api_key=api_key,
	                     timeout=cfg.REQUEST_TIMEOUT_S,
	                     max_retries=0)
	logger.info("Speech-to-text model: %s", cfg.WHISPER_MODEL)


async def unload():
	global client
	if not client:
		return
	await client.close()
	client = None


def audio_filename(audio: bytes) -> str:
	"""Guesses an upload filename from the container's magic bytes."""
	for magic, offset, filename in _SIGNATURES:
		if audio[offset:offset + len(magic)] == magic:
			return filename
	return DEFAULT_FILENAME


async def generate(audio: bytes,
                   filename: str | None = None,
                   language: str = cfg.STT_LANGUAGE) -> str:
	global client
	if not client:
		init()
	if not client:
		raise ConfigurationError("OPENAI_API_KEY is not set")

	name = filename or audio_filename(audio)
	logger.info("[TRANSCRIBE] %d bytes as %s", len(audio), name)
	start_time = time.time()
	transcription = await client.audio.transcriptions.create(
	    model=cfg.WHISPER_MODEL,
	    file=(name, audio),
	    language=language,
	)
	logger.debug("[TRANSCRIBE] took %.2f seconds", time.time() - start_time)
	return transcription.text.strip()
