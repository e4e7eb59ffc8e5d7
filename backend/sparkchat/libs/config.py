"""Runtime configuration read from the environment (and an optional .env file)."""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL", "postgresql://localhost/sparkchat")

# Auth
JWT_SECRET = os.environ.get("JWT_SECRET", "sparkchat-dev-secret")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# AI assistant
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o")
AI_SENDER_ID = "ai"
AI_SENDER_EMAIL = "AI"
AI_TRIGGER = "@ai"

# Sandbox
SANDBOX_ROOT = Path(os.environ.get("SANDBOX_ROOT", "/tmp/sparkchat-sandboxes"))
SANDBOX_BASE_PORT = int(os.environ.get("SANDBOX_BASE_PORT", "9100"))
SANDBOX_MAX = int(os.environ.get("SANDBOX_MAX", "50"))
SANDBOX_PYTHON = os.environ.get("SANDBOX_PYTHON", sys.executable)
SANDBOX_INSTALL_TIMEOUT = float(os.environ.get("SANDBOX_INSTALL_TIMEOUT", "300"))
SANDBOX_OUTPUT_LINES = int(os.environ.get("SANDBOX_OUTPUT_LINES", "500"))

# HTTP
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "").split(",")
    if origin.strip()
]
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
