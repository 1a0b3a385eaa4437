import os
from dotenv import load_dotenv

load_dotenv()

# --- Credentials ---
# A single key reaches all three services. Leave it unset and the
# transcribe/respond/speak endpoints answer with a configuration error.
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# --- Speech to text ---
WHISPER_MODEL = os.getenv("WHISPER_MODEL", "whisper-1")
STT_LANGUAGE = os.getenv("STT_LANGUAGE", "en")

# --- Language model ---
LANGUAGE_MODEL = os.getenv("LANGUAGE_MODEL", "gpt-4o-mini")
MAX_TOKENS = int(os.getenv("MAX_TOKENS", "150"))  # short replies read well aloud
TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
# Number of past user/assistant pairs sent with each request. 0 sends everything.
MAX_HISTORY_TURNS = int(os.getenv("MAX_HISTORY_TURNS", "0"))

# --- Text to speech ---
TTS_MODEL = os.getenv("TTS_MODEL", "tts-1")
TTS_SPEED = float(os.getenv("TTS_SPEED", "1.0"))
TTS_FORMAT = os.getenv("TTS_FORMAT", "mp3")

# Applies to every remote call; there are no automatic retries.
REQUEST_TIMEOUT_S = float(os.getenv("REQUEST_TIMEOUT_S", "30"))

# --- Server ---
ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
CHARACTERS_DIR = os.getenv("CHARACTERS_DIR", os.path.join(ROOT_DIR, "data", "characters"))
REMOTE_CONTROL_PAGE = os.path.join(ROOT_DIR, "remote_control", "templates", "index.html")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Desktop client ---
BACKEND_URL = os.getenv("BACKEND_URL", f"http://127.0.0.1:{PORT}")
SAMPLE_RATE = 16000  # Whisper models are trained on 16kHz audio
CHANNELS = 1
