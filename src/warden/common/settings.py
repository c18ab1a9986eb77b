import os
import pathlib
from dotenv import load_dotenv

load_dotenv()


def boolean_env(key: str, default: bool = False) -> bool:
    if key not in os.environ:
        return default
    return os.getenv(key, "0").lower() in ("1", "true", "yes")


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATA_DIR = pathlib.Path(os.getenv("DATA_DIR", "/tmp/warden"))

# Database settings
DB_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'warden.db'}")


# Worker container settings
AGENT_IMAGE = os.getenv("AGENT_IMAGE", "warden-agent:latest")
AGENT_NETWORK = os.getenv("AGENT_NETWORK", "warden-agents")
WORKER_LOG_LEVEL = os.getenv("WORKER_LOG_LEVEL", "info")

# Paths as seen by this process
SESSIONS_DIR = pathlib.Path(os.getenv("SESSIONS_DIR", DATA_DIR / "sessions"))
CONFIG_DIR = pathlib.Path(os.getenv("CONFIG_DIR", DATA_DIR / "config"))
# Paths as seen by the docker daemon, when the orchestrator itself runs in a container
HOST_SESSIONS_DIR = pathlib.Path(os.getenv("HOST_SESSIONS_DIR", SESSIONS_DIR))
HOST_CONFIG_DIR = pathlib.Path(os.getenv("HOST_CONFIG_DIR", CONFIG_DIR))

CONTAINER_CPU_LIMIT = os.getenv("CONTAINER_CPU_LIMIT", "0.5")
CONTAINER_MEMORY_LIMIT = os.getenv("CONTAINER_MEMORY_LIMIT", "512M")
CONTAINER_STOP_TIMEOUT = int(os.getenv("CONTAINER_STOP_TIMEOUT", 10))

# Messaging API credentials passed to every worker
TG_API_ID = os.getenv("TG_API_ID", "")
TG_API_HASH = os.getenv("TG_API_HASH", "")


# Worker control surface
WORKER_CONTROL_PORT = int(os.getenv("WORKER_CONTROL_PORT", 3100))
WORKER_REQUEST_TIMEOUT = float(os.getenv("WORKER_REQUEST_TIMEOUT", 10))
WORKER_HEALTH_TIMEOUT = float(os.getenv("WORKER_HEALTH_TIMEOUT", 2))
WORKER_START_TIMEOUT = float(os.getenv("WORKER_START_TIMEOUT", 30))
AUTH_RETRY_ATTEMPTS = int(os.getenv("AUTH_RETRY_ATTEMPTS", 3))
AUTH_RETRY_DELAY = float(os.getenv("AUTH_RETRY_DELAY", 1.0))
AUTH_RETRY_MAX_DELAY = float(os.getenv("AUTH_RETRY_MAX_DELAY", 8.0))


# Periodic jobs (seconds)
HEALTH_CHECK_INTERVAL = int(os.getenv("HEALTH_CHECK_INTERVAL", 60))
STARTING_GRACE_PERIOD = int(os.getenv("STARTING_GRACE_PERIOD", 5 * 60))
RETENTION_CLEANUP_INTERVAL = int(os.getenv("RETENTION_CLEANUP_INTERVAL", 24 * 60 * 60))
METRICS_COLLECTION_INTERVAL = int(os.getenv("METRICS_COLLECTION_INTERVAL", 5 * 60))
AUDIT_LOG_RETENTION_DAYS = int(os.getenv("AUDIT_LOG_RETENTION_DAYS", 30))
METRICS_RETENTION_DAYS = int(os.getenv("METRICS_RETENTION_DAYS", 90))


# Handoff tokens
TOKEN_TTL = int(os.getenv("TOKEN_TTL", 10 * 60))
TOKEN_SWEEP_INTERVAL = int(os.getenv("TOKEN_SWEEP_INTERVAL", 5 * 60))


# Web API
WEB_API_PORT = int(os.getenv("WEB_API_PORT", 3000))
SERVER_URL = os.getenv("SERVER_URL", f"http://localhost:{WEB_API_PORT}")
WEB_LOGIN_URL = os.getenv("WEB_LOGIN_URL", f"{SERVER_URL}/login")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", SERVER_URL).split(",")
    if origin.strip()
]


# Command channel
DISCORD_BOT_TOKEN = os.getenv("DISCORD_BOT_TOKEN", "")
DISCORD_COMMANDS_ENABLED = bool(
    boolean_env("DISCORD_COMMANDS_ENABLED", True) and DISCORD_BOT_TOKEN
)
DISCORD_COMMAND_PREFIX = os.getenv("DISCORD_COMMAND_PREFIX", "warden")
# Where users land after finishing the web login; the session token is appended
BOT_LINK_URL = os.getenv("BOT_LINK_URL", "https://discord.com/channels/@me")
DISCORD_MESSAGE_LIMIT = int(os.getenv("DISCORD_MESSAGE_LIMIT", 2000))
