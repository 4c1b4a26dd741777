import os

from dotenv import load_dotenv

# Loads the .env at the project root
load_dotenv()


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shopbot.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

# Messenger (Graph API)
FACEBOOK_APP_SECRET = os.getenv("FACEBOOK_APP_SECRET", "")
FACEBOOK_WEBHOOK_VERIFY_TOKEN = os.getenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "")
GRAPH_API_VERSION = os.getenv("GRAPH_API_VERSION", "v21.0")
MESSENGER_PROVIDER = os.getenv("MESSENGER_PROVIDER", "mock" if IS_DEV else "cloud").strip().lower()
MESSENGER_FALLBACK_TO_MOCK = _env_flag("MESSENGER_FALLBACK_TO_MOCK", "1" if IS_DEV else "0")

# LLM / vision
AI_PROVIDER = os.getenv("AI_PROVIDER", "openai").strip().lower()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "20"))
IMAGE_FETCH_TIMEOUT_SECONDS = float(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS", "10"))

# Image recognition tuning
TIER2_MATCH_THRESHOLD = float(os.getenv("TIER2_MATCH_THRESHOLD", "92"))
TIER3_MATCH_THRESHOLD = float(os.getenv("TIER3_MATCH_THRESHOLD", "30"))
IMAGE_CACHE_TTL_DAYS = int(os.getenv("IMAGE_CACHE_TTL_DAYS", "30"))

# Settings cache
SETTINGS_CACHE_TTL_SECONDS = int(os.getenv("SETTINGS_CACHE_TTL_SECONDS", "300"))
SETTINGS_CACHE_MAX_ENTRIES = int(os.getenv("SETTINGS_CACHE_MAX_ENTRIES", "100"))

# Conversation
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "10"))
