"""
OpenReader Audiobook Service Configuration
"""

import os
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent
STORAGE_DIR = os.environ.get("STORAGE_DIR", str(BASE_DIR / "storage"))
AUDIOBOOKS_DIR = os.environ.get("AUDIOBOOKS_DIR", str(Path(STORAGE_DIR) / "audiobooks_v1"))
DB_PATH = os.environ.get("DB_PATH", str(Path(STORAGE_DIR) / "openreader.db"))

# Server config
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3003"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Media tools
FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.environ.get("FFPROBE_BIN", "ffprobe")

# Audio settings
AUDIO_BITRATE = os.environ.get("AUDIO_BITRATE", "64k")
DEFAULT_FORMAT = os.environ.get("DEFAULT_FORMAT", "m4b")

# Owner used when no user header is sent (auth disabled)
UNCLAIMED_USER_ID = os.environ.get("UNCLAIMED_USER_ID", "unclaimed")

# How often a running request checks whether the client went away
DISCONNECT_POLL_SECONDS = float(os.environ.get("DISCONNECT_POLL_SECONDS", "0.5"))

# CORS - allow all for local development
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

# Security - API password (optional - leave empty for no auth)
API_PASSWORD = os.environ.get("API_PASSWORD", "")

# Create settings object for easy import
class Settings:
    host = HOST
    port = PORT
    log_level = LOG_LEVEL
    storage_dir = STORAGE_DIR
    audiobooks_dir = AUDIOBOOKS_DIR
    db_path = DB_PATH
    ffmpeg_bin = FFMPEG_BIN
    ffprobe_bin = FFPROBE_BIN
    audio_bitrate = AUDIO_BITRATE
    default_format = DEFAULT_FORMAT
    unclaimed_user_id = UNCLAIMED_USER_ID
    disconnect_poll_seconds = DISCONNECT_POLL_SECONDS
    cors_origins = CORS_ORIGINS
    api_password = API_PASSWORD

settings = Settings()
