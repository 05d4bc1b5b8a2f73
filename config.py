import os
from pathlib import Path

APP_DIR = Path(__file__).resolve().parent


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    PORT = int(os.environ.get("PORT", "5000"))

    # Recognizer pipeline: prints one JSON event per line on stdout
    LISTEN_CMD = os.environ.get("LISTEN_CMD", f"bash {APP_DIR / 'listen.sh'}")
    # Playback device for TTS and tones
    AUDIO_DEV = os.environ.get("AUDIO_DEV", "plughw:3,0")
    BEEP_PATH = os.environ.get("BEEP_PATH", str(APP_DIR / "snd" / "beep.wav"))

    PRESET_FILE = os.environ.get("PRESET_FILE", str(APP_DIR / "voice_score_prefs.json"))
    EXPORT_DIR = os.environ.get("EXPORT_DIR", str(APP_DIR / "exports"))

    CONFIDENCE_THRESHOLD = _env_float("CONFIDENCE_THRESHOLD", 0.55)

    # Voice loop timing (seconds)
    PACING_GUARD_SEC = _env_float("PACING_GUARD_SEC", 0.7)
    DUPLICATE_ACCEPT_SEC = _env_float("DUPLICATE_ACCEPT_SEC", 3.0)
    REJECTION_DEDUPE_SEC = _env_float("REJECTION_DEDUPE_SEC", 2.5)
    REJECTION_SUPPRESS_SEC = _env_float("REJECTION_SUPPRESS_SEC", 0.9)
    REJECTED_SPEECH_DEDUPE_SEC = _env_float("REJECTED_SPEECH_DEDUPE_SEC", 3.0)
    SOFT_STATUS_MIN_GAP_SEC = _env_float("SOFT_STATUS_MIN_GAP_SEC", 0.65)
    SOFT_STATUS_REPEAT_SEC = _env_float("SOFT_STATUS_REPEAT_SEC", 1.4)
    TTS_SPEAKING_MARGIN_SEC = _env_float("TTS_SPEAKING_MARGIN_SEC", 0.3)
    POST_SPEECH_MARGIN_SEC = _env_float("POST_SPEECH_MARGIN_SEC", 0.9)
    HIGHLIGHT_CLEAR_SEC = _env_float("HIGHLIGHT_CLEAR_SEC", 0.7)
    INVALID_FLASH_SEC = _env_float("INVALID_FLASH_SEC", 0.18)
    PRESET_STATUS_SEC = _env_float("PRESET_STATUS_SEC", 2.4)

    MAX_DEBUG_LINES = int(os.environ.get("MAX_DEBUG_LINES", "14"))
    EVENT_QUEUE_SIZE = int(os.environ.get("EVENT_QUEUE_SIZE", "256"))

    # WebSocket keepalive interval
    WS_PING_SEC = _env_float("WS_PING_SEC", 1.0)
