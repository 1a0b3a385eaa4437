"""Error types shared by the backend, the pipeline and the desktop client.

Every backend error carries the HTTP status it maps to and a short,
human-readable ``error`` string. The exception message holds the details.
"""


class VoiceChatError(Exception):
	status_code = 500
	error = "Internal server error"


class InvalidInput(VoiceChatError):
	"""Missing or malformed request fields."""
	status_code = 400
	error = "Invalid request"


class UnknownPersona(InvalidInput):
	error = "Invalid character"

	def __init__(self, persona_id):
		super().__init__(f"Unknown character: {persona_id!r}")
		self.persona_id = persona_id


class ConfigurationError(VoiceChatError):
	"""The service credential is missing. Needs operator action, not a retry."""
	status_code = 503
	error = "Server is not configured"


class CollaboratorFailure(VoiceChatError):
	"""A remote speech or language service failed or timed out.

    The caller may retry the failed stage or the whole turn.
    """
	stage = ""
	retryable = True


class TranscriptionFailed(CollaboratorFailure):
	stage = "transcribe"
	error = "Transcription failed"


class GenerationFailed(CollaboratorFailure):
	stage = "respond"
	error = "Response generation failed"


class SynthesisFailed(CollaboratorFailure):
	stage = "speak"
	error = "Text-to-speech failed"


# --- Client-side errors ---
class MicrophonePermissionDenied(Exception):
	"""The microphone could not be opened (denied, missing or busy)."""


class BackendError(Exception):
	"""An HTTP call from the desktop client to the backend failed."""

	def __init__(self, stage: str, message: str, status_code: int | None = None):
		super().__init__(message)
		self.stage = stage
		self.status_code = status_code
