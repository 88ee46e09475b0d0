from dotenv import load_dotenv
from sqlalchemy.engine import make_url
import os

load_dotenv()

DATABASE_URL = os.environ["DATABASE_URL"]

AGENT_PROVIDER = os.environ.get("AGENT_PROVIDER", "openai")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4-turbo-preview")
OLLAMA_SERVE_URL = os.environ.get("OLLAMA_SERVE_URL", "http://127.0.0.1:11434")
OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "llama2")
AGENT_WALLET_ADDRESS = os.environ.get("AGENT_WALLET_ADDRESS")
AGENT_NETWORK = os.environ.get("AGENT_NETWORK", "MAINNET")

# 0 replays the whole session as context
HISTORY_WINDOW = int(os.environ.get("HISTORY_WINDOW", "0"))

GRAPHITE_HOST = os.environ.get("GRAPHITE_HOST", "localhost")
GRAPHITE_HOST_PORT = int(os.environ.get("GRAPHITE_HOST_PORT", "8125"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def async_database_url(url: str) -> str:
    """Point a plain postgres url at the asyncpg driver; other urls pass through."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def redact_database_url(url: str) -> str:
    """Drop the credentials, then keep only the first 20 characters."""
    bare = make_url(url).set(username=None, password=None).render_as_string(hide_password=True)
    return bare[:20] + "..."
