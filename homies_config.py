import os
from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_bool(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# -------- CONFIG ----------
SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", 5004))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# primary relational store
DB_PATH = os.environ.get("DB_PATH", os.path.join(BASE_DIR, "homies.db"))

# local backup snapshots
BACKUP_DIR = os.environ.get("BACKUP_DIR", os.path.join(BASE_DIR, "backups"))
BACKUP_PREFIX = os.environ.get("BACKUP_PREFIX", "messages.json.backup-")
BACKUP_KEEP = int(os.environ.get("BACKUP_KEEP", 3))  # 0 keeps every snapshot

# secondary object store (empty url disables the tier)
BLOB_STORE_URL = os.environ.get("BLOB_STORE_URL", "")
BLOB_STORE_TOKEN = os.environ.get("BLOB_STORE_TOKEN", "")
BLOB_STORE_KEY = os.environ.get("BLOB_STORE_KEY", "messages.json")
BLOB_STORE_TIMEOUT = float(os.environ.get("BLOB_STORE_TIMEOUT", 10))

SESSION_TOKEN_MAX_AGE = int(os.environ.get("SESSION_TOKEN_MAX_AGE", 7 * 24 * 3600))
CORS_ALLOWED_ORIGINS = os.environ.get("CORS_ALLOWED_ORIGINS", "*")
SOCKETIO_ASYNC_MODE = os.environ.get("SOCKETIO_ASYNC_MODE", "eventlet")
PERSIST_IN_BACKGROUND = _env_bool("PERSIST_IN_BACKGROUND", True)
DEFAULT_CHANNEL = os.environ.get("DEFAULT_CHANNEL", "general")
MAX_MESSAGE_LENGTH = int(os.environ.get("MAX_MESSAGE_LENGTH", 4000))


def defaults():
    """Settings copied into app.config by create_app()."""
    return {
        "SECRET_KEY": SECRET_KEY,
        "HOST": HOST,
        "PORT": PORT,
        "LOG_LEVEL": LOG_LEVEL,
        "DB_PATH": DB_PATH,
        "BACKUP_DIR": BACKUP_DIR,
        "BACKUP_PREFIX": BACKUP_PREFIX,
        "BACKUP_KEEP": BACKUP_KEEP,
        "BLOB_STORE_URL": BLOB_STORE_URL,
        "BLOB_STORE_TOKEN": BLOB_STORE_TOKEN,
        "BLOB_STORE_KEY": BLOB_STORE_KEY,
        "BLOB_STORE_TIMEOUT": BLOB_STORE_TIMEOUT,
        "SESSION_TOKEN_MAX_AGE": SESSION_TOKEN_MAX_AGE,
        "CORS_ALLOWED_ORIGINS": CORS_ALLOWED_ORIGINS,
        "SOCKETIO_ASYNC_MODE": SOCKETIO_ASYNC_MODE,
        "PERSIST_IN_BACKGROUND": PERSIST_IN_BACKGROUND,
        "DEFAULT_CHANNEL": DEFAULT_CHANNEL,
        "MAX_MESSAGE_LENGTH": MAX_MESSAGE_LENGTH,
    }
