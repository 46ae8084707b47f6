"""Application configuration."""

import os

# Server settings
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Upload limits
MAX_FILE_SIZE_MB = int(os.getenv("MAX_FILE_SIZE_MB", "50"))
MAX_FILE_SIZE = MAX_FILE_SIZE_MB * 1024 * 1024

# Processing settings
MAX_CONCURRENT_OPERATIONS = int(os.getenv("MAX_CONCURRENT_OPERATIONS", "3"))
STAGE_YIELD_DELAY = float(os.getenv("STAGE_YIELD_DELAY", "0.01"))  # seconds between checkpoints
FILE_TIMEOUT_SECONDS = float(os.getenv("FILE_TIMEOUT_SECONDS", "300"))  # 0 disables
CHANNEL_BUFFER_SIZE = int(os.getenv("CHANNEL_BUFFER_SIZE", "64"))  # frames held before emit waits

# OCR settings
OCR_LANGUAGE = os.getenv("OCR_LANGUAGE", "en")
OCR_RENDER_DPI = int(os.getenv("OCR_RENDER_DPI", "200"))
