import base64
import logging
from typing import Any, Dict, List

import httpx

import config as cfg
from voicechat.errors import BackendError

logger = logging.getLogger(__name__)


class BackendClient:
	"""Blocking client for the voice chat HTTP API.

    Every failure (connection problems included) surfaces as a BackendError
    tagged with the stage that was running.
    """

	def __init__(self,
	             base_url: str = cfg.BACKEND_URL,
	             timeout: float = cfg.REQUEST_TIMEOUT_S + 5,
	             transport: httpx.BaseTransport | None = None):
		self._http = httpx.Client(base_url=base_url.rstrip("/") + "/api",
		                          timeout=timeout,
		                          transport=transport)

	def close(self):
		self._http.close()

	def _call(self, stage: str, method: str, path: str, **kwargs) -> Any:
		try:
			response = self._http.request(method, path, **kwargs)
		except httpx.HTTPError as e:
			raise BackendError(stage, f"Cannot reach server: {e}") from e
		if response.is_error:
			try:
				body = response.json()
				message = body.get("details") or body.get("error") or response.text
			except ValueError:
				message = response.text
			raise BackendError(stage, message, response.status_code)
		return response.json()

	def health(self) -> Dict[str, Any]:
		return self._call("health", "GET", "/health")

	def personas(self) -> List[Dict[str, str]]:
		return self._call("personas", "GET", "/personas")

	def history(self, persona_id: str) -> List[Dict[str, Any]]:
		data = self._call("history", "GET", f"/personas/{persona_id}/history")
		return data["messages"]

	def transcribe(self,
	               audio: bytes,
	               persona_id: str | None = None,
	               filename: str = "audio.wav") -> str:
		data = {"personaId": persona_id} if persona_id else {}
		result = self._call("transcribe",
		                    "POST",
		                    "/transcribe",
		                    files={"audio": (filename, audio)},
		                    data=data)
		return result["transcript"]

	def respond(self, persona_id: str, user_message: str) -> str:
		result = self._call("respond",
		                    "POST",
		                    "/respond",
		                    json={
		                        "userMessage": user_message,
		                        "personaId": persona_id
		                    })
		return result["response"]

	def speak(self, persona_id: str, text: str) -> bytes:
		result = self._call("speak",
		                    "POST",
		                    "/speak",
		                    json={
		                        "text": text,
		                        "personaId": persona_id
		                    })
		return base64.b64decode(result["audio"])

	def reset(self, persona_id: str) -> bool:
		result = self._call("reset", "POST", "/reset", json={"personaId": persona_id})
		return bool(result.get("success"))
