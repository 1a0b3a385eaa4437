import logging

from openai import AsyncOpenAI

import config as cfg
from voicechat.errors import ConfigurationError

logger = logging.getLogger(__name__)

client: AsyncOpenAI | None = None

# list is from https://platform.openai.com/docs/guides/text-to-speech
Voices = [
    'alloy', 'ash', 'ballad', 'coral', 'echo', 'fable', 'nova', 'onyx', 'sage',
    'shimmer'
]


def init(api_key: str | None = None):
	global client
	api_key = api_key or cfg.OPENAI_API_KEY
	if not api_key:
		logger.warning("OPENAI_API_KEY is not set; speech synthesis is disabled")
		client = None
		return
	client = AsyncOpenAI(api_key=api_key,
	                     timeout=cfg.REQUEST_TIMEOUT_S,
	                     max_retries=0)
	logger.info("Text-to-speech model: %s", cfg.TTS_MODEL)


async def unload():
	global client
	if not client:
		return
	await client.close()
	client = None


async def generate(text: str,
                   voice: str = 'alloy',
                   speed: float = cfg.TTS_SPEED,
                   response_format: str = cfg.TTS_FORMAT) -> bytes:
	global client
	if not client:
		init()
	if not client:
		raise ConfigurationError("OPENAI_API_KEY is not set")

	if voice not in Voices:
		logger.warning("[TTS] Unknown voice %r, the service may reject it", voice)

	logger.info("[TTS] Creating audio with voice: %s", voice)
	response = await client.audio.speech.create(
	    model=cfg.TTS_MODEL,
	    voice=voice,
	    input=text,
	    speed=speed,
	    response_format=response_format,
	)
	return await response.aread()
