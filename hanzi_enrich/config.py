"""Configuration and runtime constants."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
SECONDARY_API_KEY = os.getenv("SECONDARY_API_KEY") or OPENAI_API_KEY
SECONDARY_BASE_URL = os.getenv("SECONDARY_BASE_URL")  # any OpenAI-compatible endpoint
AZURE_SPEECH_KEY = os.getenv("AZURE_SPEECH_KEY")
AZURE_SPEECH_REGION = os.getenv("AZURE_SPEECH_REGION", "eastus")

# Model Configuration
PRIMARY_TEXT_MODEL = os.getenv("PRIMARY_TEXT_MODEL", "gpt-4o-mini")
SECONDARY_TEXT_MODEL = os.getenv("SECONDARY_TEXT_MODEL", "gpt-4o")
SECONDARY_ENABLED = os.getenv("SECONDARY_ENABLED", "1") == "1"
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o-mini")
TEMPERATURE = float(os.getenv("TEMPERATURE", "0.3"))

# Image Configuration
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gpt-image-1")  # "gpt-image-1" or "dall-e-3"
IMAGE_SIZE = os.getenv("IMAGE_SIZE", "1024x1024")
MAX_IMAGE_ATTEMPTS = int(os.getenv("MAX_IMAGE_ATTEMPTS", "3"))
SMART_PROMPTS = os.getenv("SMART_PROMPTS", "1") == "1"

# Speech Configuration
TTS_VOICE = os.getenv("TTS_VOICE", "zh-TW-HsiaoChenNeural")
TTS_RATE = os.getenv("TTS_RATE", "-10%")
TTS_OUTPUT_FORMAT = "audio-16khz-128kbitrate-mono-mp3"

# Provider retry budget
PROVIDER_RETRIES = int(os.getenv("PROVIDER_RETRIES", "3"))
PROVIDER_RETRY_DELAY_MS = int(os.getenv("PROVIDER_RETRY_DELAY_MS", "1000"))
PROVIDER_TIMEOUT_S = float(os.getenv("PROVIDER_TIMEOUT_S", "60"))

# Minimum spacing between calls, per external service (ms)
SERVICE_INTERVALS_MS = {
    "openai-text": int(os.getenv("OPENAI_TEXT_INTERVAL_MS", "500")),
    "openai-image": int(os.getenv("OPENAI_IMAGE_INTERVAL_MS", "1000")),
    "openai-vision": int(os.getenv("OPENAI_VISION_INTERVAL_MS", "500")),
    "azure-tts": int(os.getenv("AZURE_TTS_INTERVAL_MS", "500")),
}

# Queue Configuration
WORKER_CONCURRENCY = {
    "deck-import": int(os.getenv("DECK_IMPORT_CONCURRENCY", "2")),
    "deck-enrichment": int(os.getenv("DECK_ENRICHMENT_CONCURRENCY", "3")),
    "card-enrichment": int(os.getenv("CARD_ENRICHMENT_CONCURRENCY", "5")),
    "bulk-import": int(os.getenv("BULK_IMPORT_CONCURRENCY", "1")),
}
JOB_TIMEOUT_S = {
    "deck-import": float(os.getenv("DECK_JOB_TIMEOUT_S", "600")),
    "deck-enrichment": float(os.getenv("DECK_JOB_TIMEOUT_S", "600")),
    "card-enrichment": float(os.getenv("CARD_JOB_TIMEOUT_S", "300")),
    "bulk-import": float(os.getenv("DECK_JOB_TIMEOUT_S", "600")),
}
JOB_PRIORITIES = {"user": 100, "card": 50, "deck": 20, "bulk": 10}
TRANSIENT_RETRY_LIMIT = int(os.getenv("TRANSIENT_RETRY_LIMIT", "2"))
RETRY_BACKOFF_S = float(os.getenv("RETRY_BACKOFF_S", "5"))
KEEP_COMPLETED = int(os.getenv("KEEP_COMPLETED", "100"))
KEEP_FAILED = int(os.getenv("KEEP_FAILED", "50"))
BULK_BATCH_SIZE = int(os.getenv("BULK_BATCH_SIZE", "10"))

# Monitoring
HEARTBEAT_MAX_AGE_S = float(os.getenv("HEARTBEAT_MAX_AGE_S", "60"))
HIGH_BACKLOG_THRESHOLD = int(os.getenv("HIGH_BACKLOG_THRESHOLD", "100"))
HIGH_FAILURE_RATE = float(os.getenv("HIGH_FAILURE_RATE", "0.1"))

# Directory Configuration
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("HANZI_ENRICH_DATA_DIR", str(BASE_DIR / "data")))
MEDIA_DIR = DATA_DIR / "media"
MEDIA_BASE_URL = os.getenv("MEDIA_BASE_URL", "/api/media")

# File paths
CARDS_DB = DATA_DIR / "cards.sqlite"
INPUT_CHARACTERS_FILE = DATA_DIR / "input_characters.txt"

# Claim markers expire so a crashed worker never blocks a character
CLAIM_TTL_S = float(os.getenv("CLAIM_TTL_S", "120"))
CLAIM_WAIT_S = float(os.getenv("CLAIM_WAIT_S", "30"))

# Testing Configuration
LIVE_TESTING = os.getenv("HANZI_ENRICH_LIVE", "0") == "1"
