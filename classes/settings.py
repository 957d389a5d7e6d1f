import logging
import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("devblox_relay")

# --- Configuration ---
PORT = int(os.getenv("PORT", "10000"))

DAILY_QUOTA_CAP = int(os.getenv("DAILY_QUOTA_CAP", "10"))
HEARTBEAT_TIMEOUT_SECONDS = float(os.getenv("HEARTBEAT_TIMEOUT_SECONDS", "20"))
LONG_POLL_MAX_WAIT_SECONDS = float(os.getenv("LONG_POLL_MAX_WAIT_SECONDS", "25"))
LONG_POLL_WORKERS = int(os.getenv("LONG_POLL_WORKERS", "64"))
MAILBOX_WARN_DEPTH = int(os.getenv("MAILBOX_WARN_DEPTH", "50"))

LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.6"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "800"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

GOOGLE_SERVICE_KEY = os.getenv("GOOGLE_SERVICE_KEY", "")
SHEET_ID = os.getenv("SHEET_ID", "")

REDEEM_CODES_RAW = os.getenv("REDEEM_CODES", "admin:100")


def parse_redeem_codes(raw: str) -> dict[str, int]:
    """
    Parse "code:bonus,code2:bonus2" into {"code": bonus}.
    Codes are matched case-insensitively, so keys are lowercased.
    Entries without a valid non-negative integer bonus are skipped.
    """
    codes: dict[str, int] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry or ":" not in entry:
            continue
        code, _, bonus = entry.partition(":")
        code = code.strip().lower()
        try:
            value = int(bonus.strip())
        except ValueError:
            logger.warning("Ignoring redeem code %r: bonus %r is not an integer", code, bonus)
            continue
        if code and value >= 0:
            codes[code] = value
    return codes


REDEEM_CODES = parse_redeem_codes(REDEEM_CODES_RAW)
