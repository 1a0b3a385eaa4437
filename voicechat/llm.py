import logging
from typing import Dict, Iterable, List

from openai import AsyncOpenAI
from openai.types.chat import ChatCompletion

import config as cfg
from voicechat.errors import ConfigurationError

logger = logging.getLogger(__name__)

client: AsyncOpenAI | None = None


def init(api_key: str | None = None):
	global client
	api_key = api_key or cfg.OPENAI_API_KEY
	if not api_key:
		logger.warning("OPENAI_API_KEY is not set; response generation is disabled")
		client = None
		return
	client = AsyncOpenAI(api_key=api_key,
	                     timeout=cfg.REQUEST_TIMEOUT_S,
	                     max_retries=0)
	logger.info("Language model: %s", cfg.LANGUAGE_MODEL)


async def unload():
	global client
	if not client:
		return
	await client.close()
	client = None


def build_messages(sys_input: str, history: Iterable[Dict[str, str]],
                   input: str) -> List[Dict[str, str]]:
	"""System prompt first, then the prior history in order, then the new input."""
	messages = [{'role': 'system', 'content': sys_input}]
	messages.extend(history)
	messages.append({'role': 'user', 'content': input})
	return messages


async def generate(messages: List[Dict[str, str]],
                   max_tokens: int = cfg.MAX_TOKENS,
                   temperature: float = cfg.TEMPERATURE) -> str:
	global client
	if not client:
		init()
	if not client:
		raise ConfigurationError("OPENAI_API_KEY is not set")

	output: ChatCompletion = await client.chat.completions.create(
	    model=cfg.LANGUAGE_MODEL,
	    messages=messages,
	    max_tokens=max_tokens,
	    temperature=temperature,
	    stream=False,
	)
	output_str = output.choices[0].message.content
	return (output_str or '').strip()
