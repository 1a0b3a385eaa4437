import base64
import binascii
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import AliasChoices, BaseModel, Field, StringConstraints
import uvicorn

import config as cfg
from voicechat.conversation import ConversationStore
from voicechat.errors import CollaboratorFailure, InvalidInput, VoiceChatError
from voicechat.personas import PersonaRegistry, load_personas
from voicechat.pipeline import Pipeline

logger = logging.getLogger(__name__)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# Older clients send `character` / `transcript`; both names are accepted.
def persona_field(**kwargs):
	return Field(validation_alias=AliasChoices("personaId", "character"), **kwargs)


# --- Request Models ---


class TranscribeRequest(BaseModel):
	audio: NonEmptyStr  # base64, optionally as a data: URL
	persona_id: Optional[str] = persona_field(default=None)
	filename: Optional[str] = None


class RespondRequest(BaseModel):
	user_message: NonEmptyStr = Field(
	    validation_alias=AliasChoices("userMessage", "transcript"))
	persona_id: NonEmptyStr = persona_field()


class SpeakRequest(BaseModel):
	text: NonEmptyStr
	persona_id: NonEmptyStr = persona_field()


class ResetRequest(BaseModel):
	persona_id: NonEmptyStr = persona_field()


# --- Helpers ---


def get_pipeline(request: Request) -> Pipeline:
	return request.app.state.pipeline


def _decode_base64_audio(data: str) -> bytes:
	if data.startswith("data:"):
		data = data.partition(",")[2]
	try:
		return base64.b64decode(data, validate=True)
	except (binascii.Error, ValueError) as e:
		raise InvalidInput(f"Audio is not valid base64: {e}") from e


def _upload_filename(name: str | None) -> str | None:
	# Browsers name FormData blobs "blob"; let the transcriber sniff those.
	if name and "." in name:
		return name
	return None


async def _read_audio(request: Request):
	"""Accepts a multipart `audio` file or a JSON body with base64 `audio`.

    Returns (audio bytes, persona id or None, filename or None).
    """
	content_type = request.headers.get("content-type", "")
	if content_type.startswith("multipart/form-data"):
		form = await request.form()
		upload = form.get("audio")
		if upload is None or isinstance(upload, str):
			raise InvalidInput("No audio file provided")
		audio = await upload.read()
		persona_id = form.get("personaId") or form.get("character") or None
		return audio, persona_id, _upload_filename(upload.filename)

	try:
		body = TranscribeRequest.model_validate(await request.json())
	except ValueError as e:
		# Covers malformed JSON and pydantic's ValidationError.
		raise InvalidInput(f"No audio provided: {e}") from e
	return _decode_base64_audio(body.audio), body.persona_id or None, body.filename


def _message_json(message) -> dict:
	data = {
	    "role": message.role.value,
	    "text": message.text,
	    "timestamp": message.timestamp.isoformat(),
	}
	if message.audio is not None:
		data["audio"] = base64.b64encode(message.audio).decode("utf-8")
	return data


# --- API Endpoints ---
router = APIRouter()


@router.get("/health")
async def health():
	return {"status": "ok", "configured": bool(cfg.OPENAI_API_KEY)}


@router.get("/personas")
@router.get("/characters")
async def list_personas(pipeline: Pipeline = Depends(get_pipeline)):
	return pipeline.registry.list()


@router.get("/personas/{persona_id}/history")
async def persona_history(persona_id: str,
                          pipeline: Pipeline = Depends(get_pipeline)):
	pipeline.registry.get(persona_id)
	messages = pipeline.store.snapshot(persona_id)
	return {"personaId": persona_id, "messages": [_message_json(m) for m in messages]}


@router.post("/transcribe")
async def transcribe(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
	"""Converts recorded speech to text.

    When a character is named the transcript is stored as that character's
    pending user message straight away.
    """
	audio, persona_id, filename = await _read_audio(request)
	logger.info("[TRANSCRIBE] Audio received, size: %d", len(audio))
	transcript = await pipeline.transcribe(audio, persona_id, filename=filename)
	return {"transcript": transcript}


@router.post("/respond")
async def respond(body: RespondRequest, pipeline: Pipeline = Depends(get_pipeline)):
	logger.info("[RESPOND] User: %s Character: %s", body.user_message,
	            body.persona_id)
	reply = await pipeline.respond(body.persona_id, body.user_message)
	return {"response": reply, "personaId": body.persona_id}


@router.post("/speak")
@router.post("/tts")
async def speak(body: SpeakRequest, pipeline: Pipeline = Depends(get_pipeline)):
	audio = await pipeline.speak(body.persona_id, body.text)
	return {
	    "audio": base64.b64encode(audio).decode("utf-8"),
	    "personaId": body.persona_id
	}


@router.post("/reset")
@router.post("/clear-history")
async def reset(body: ResetRequest, pipeline: Pipeline = Depends(get_pipeline)):
	persona = pipeline.registry.get(body.persona_id)
	pipeline.store.clear(body.persona_id)
	return {
	    "success": True,
	    "message": f"Chat history for {persona.display_name} cleared"
	}


@router.post("/turn")
async def turn(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
	"""The whole turn in one call. The reply text survives a TTS failure."""
	audio, persona_id, filename = await _read_audio(request)
	if not persona_id:
		raise InvalidInput("Missing personaId")
	result = await pipeline.run_turn(persona_id, audio, filename=filename)
	return {
	    "transcript": result.transcript,
	    "response": result.reply,
	    "audio": base64.b64encode(result.audio).decode("utf-8") if result.audio else None,
	    "error": result.error,
	}


# --- Error Handlers ---


async def voicechat_error_handler(request: Request, exc: VoiceChatError):
	body = {"error": exc.error, "details": str(exc)}
	if isinstance(exc, CollaboratorFailure):
		body["stage"] = exc.stage
	return JSONResponse(body, status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
	details = "; ".join(
	    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
	    for err in exc.errors())
	return JSONResponse({"error": "Invalid request", "details": details},
	                    status_code=400)


# --- App & Models ---


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
	if pipeline is None:
		registry = PersonaRegistry(load_personas(cfg.CHARACTERS_DIR))
		pipeline = Pipeline(registry, ConversationStore(registry.ids))

	app = FastAPI(title="Persona Voice Chat")
	app.state.pipeline = pipeline
	app.add_middleware(CORSMiddleware,
	                   allow_origins=cfg.CORS_ORIGINS,
	                   allow_methods=["*"],
	                   allow_headers=["*"])
	app.add_exception_handler(VoiceChatError, voicechat_error_handler)
	app.add_exception_handler(RequestValidationError, validation_error_handler)
	app.include_router(router)
	app.include_router(router, prefix="/api")

	@app.get("/", response_class=HTMLResponse)
	async def get_remote_control():
		with open(cfg.REMOTE_CONTROL_PAGE, encoding="utf-8") as f:
			return HTMLResponse(content=f.read(), status_code=200)

	@app.on_event("startup")
	def startup_event():
		logging.basicConfig(level=cfg.LOG_LEVEL,
		                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
		logger.info("Initializing speech and language clients...")
		pipeline.init()
		logger.info("Available characters: %s", ", ".join(
		    f"{p['displayName']} ({p['sourceLabel']})" for p in pipeline.registry.list()))

	@app.on_event("shutdown")
	async def shutdown_event():
		logger.info("Closing speech and language clients...")
		await pipeline.unload()

	return app


app = create_app()

if __name__ == "__main__":
	uvicorn.run(app, host=cfg.HOST, port=cfg.PORT)
