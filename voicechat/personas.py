import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List

import config as cfg
from voicechat.errors import UnknownPersona

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Persona:
	id: str
	display_name: str
	source_label: str
	instruction: str
	greeting: str
	voice_id: str

	def summary(self) -> Dict[str, str]:
		"""Public-facing fields, as listed to clients."""
		return {
		    "id": self.id,
		    "displayName": self.display_name,
		    "sourceLabel": self.source_label,
		    "greeting": self.greeting,
		}


class PersonaRegistry:
	"""Read-only lookup of the characters available for this process."""

	def __init__(self, personas: Iterable[Persona]):
		self._personas: Dict[str, Persona] = {}
		for persona in personas:
			if persona.id in self._personas:
				raise ValueError(f"Duplicate character id: {persona.id!r}")
			self._personas[persona.id] = persona

	def get(self, persona_id: str) -> Persona:
		persona = self._personas.get(persona_id)
		if persona is None:
			raise UnknownPersona(persona_id)
		return persona

	def list(self) -> List[Dict[str, str]]:
		return [p.summary() for p in self._personas.values()]

	@property
	def ids(self) -> List[str]:
		return list(self._personas)

	def __contains__(self, persona_id) -> bool:
		return persona_id in self._personas

	def __len__(self) -> int:
		return len(self._personas)


def _persona_from_config(char_id: str, config_data: dict) -> Persona:
	return Persona(id=char_id,
	               display_name=config_data['name'],
	               source_label=config_data.get('source', ''),
	               instruction=config_data['system_prompt'],
	               greeting=config_data.get('greeting', ''),
	               voice_id=config_data.get('voice', 'alloy'))


def load_personas(characters_dir: str = cfg.CHARACTERS_DIR) -> List[Persona]:
	"""Scans the characters directory and loads their configs.

    Each character lives in ``<characters_dir>/<id>/config.json``. Configs are
    ordered by their ``order`` key, then by id. Broken configs are skipped.
    """
	logger.info("Loading characters from %s", characters_dir)
	if not os.path.isdir(characters_dir):
		raise FileNotFoundError(f"Characters directory not found at {characters_dir}")

	loaded = []
	for char_id in os.listdir(characters_dir):
		char_dir = os.path.join(characters_dir, char_id)
		config_path = os.path.join(char_dir, "config.json")
		if not (os.path.isdir(char_dir) and os.path.isfile(config_path)):
			continue
		try:
			with open(config_path, 'r', encoding='utf-8') as f:
				config_data = json.load(f)
			persona = _persona_from_config(char_id, config_data)
		except (OSError, ValueError, KeyError) as e:
			logger.error("Error loading character '%s': %s", char_id, e)
			continue
		loaded.append((config_data.get('order', 0), persona))
		logger.info("  - Loaded character: %s (%s)", persona.display_name,
		            persona.source_label)

	if not loaded:
		raise ValueError(f"No characters found in {characters_dir}")

	loaded.sort(key=lambda item: (item[0], item[1].id))
	return [persona for _, persona in loaded]
