import logging
import os

from src.db.database_service import DatabaseService

logger = logging.getLogger(__name__)

# Full list of settings to manage
ALL_SETTINGS = [
    # Transcription engine
    'TRANSCRIPTION_BACKEND', 'TRANSCRIPTION_MODEL', 'TRANSCRIPTION_LANGUAGE',
    'WHISPER_CPU_THREADS', 'MODELS_DIR', 'MODEL_REGISTRY_URL', 'MODEL_DOWNLOAD_TIMEOUT',

    # Synthetic fallback transcripts
    'SYNTHETIC_SENTENCE_SECONDS', 'SYNTHETIC_DEFAULT_DURATION',

    # Documents and alignment
    'DOCUMENT_MIN_TEXT_CHARS', 'ALIGNMENT_MATCH_THRESHOLD',
    'ALIGNMENT_SYNTHETIC_CONFIDENCE', 'ALIGNMENT_INTERPOLATED_CONFIDENCE',

    # System
    'TZ', 'LOG_LEVEL', 'DATA_DIR',
]

# Settings a running process reads from the settings table on every use,
# so the HTTP surface can change them without a restart
ENGINE_SETTINGS = ['TRANSCRIPTION_BACKEND', 'TRANSCRIPTION_MODEL', 'TRANSCRIPTION_LANGUAGE']

VALID_BACKENDS = ('auto', 'metal', 'cuda', 'vulkan', 'cpu')

# Default values
DEFAULT_CONFIG = {
    'TZ': 'America/New_York',
    'LOG_LEVEL': 'INFO',
    'DATA_DIR': '/data',
    'MODELS_DIR': '',
    'MODEL_REGISTRY_URL': 'https://huggingface.co/Systran/faster-whisper-{model}/resolve/main/{filename}',
    'MODEL_DOWNLOAD_TIMEOUT': '60',
    'TRANSCRIPTION_BACKEND': 'auto',
    'TRANSCRIPTION_MODEL': 'base.en',
    'TRANSCRIPTION_LANGUAGE': 'en',
    'WHISPER_CPU_THREADS': '4',
    'SYNTHETIC_SENTENCE_SECONDS': '3',
    'SYNTHETIC_DEFAULT_DURATION': '300',
    'DOCUMENT_MIN_TEXT_CHARS': '100',
    'ALIGNMENT_MATCH_THRESHOLD': '0.7',
    'ALIGNMENT_SYNTHETIC_CONFIDENCE': '0.3',
    'ALIGNMENT_INTERPOLATED_CONFIDENCE': '0.5',
}


def get_env_float(key: str, default: float) -> float:
    """Read a float setting from the environment, falling back on bad input."""
    raw = os.environ.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid value for {key}: '{raw}', using {default}")
        return default


def get_env_int(key: str, default: int) -> int:
    return int(get_env_float(key, default))


class ConfigLoader:
    """
    Loads configuration from database and updates environment variables.
    Settings in the database take precedence over environment variables,
    except for critical paths that might be needed to connect to the DB itself.
    """

    @staticmethod
    def bootstrap_config(db_service: DatabaseService):
        """
        If settings table is empty, populate it from os.environ or defaults.
        """
        try:
            existing_settings = db_service.get_all_settings()
            if existing_settings:
                return

            logger.info("🚀 Bootstrapping configuration from environment variables...")

            count = 0
            for key in ALL_SETTINGS:
                # Priority: 1. Env Var, 2. Default, 3. Empty string
                val = os.environ.get(key, DEFAULT_CONFIG.get(key, ""))
                if val is None:
                    val = ""

                db_service.set_setting(key, str(val))
                count += 1

            logger.info(f"✅ Bootstrapped {count} settings to database")

        except Exception as e:
            logger.error(f"⚠️  Error bootstrapping config: {e}")

    @staticmethod
    def load_settings(db_service: DatabaseService):
        """
        Load all settings from database and update os.environ.

        Empty values are skipped so an unset row never shadows a real
        environment variable.
        """
        try:
            settings = db_service.get_all_settings()
            count = 0

            for key, value in settings.items():
                # DATA_DIR locates the database itself and is never overridden from it
                if key == 'DATA_DIR' or value is None or str(value) == "":
                    continue
                os.environ[key] = str(value)
                count += 1

            logger.info(f"⚙️  Loaded {count} settings from database")

        except Exception as e:
            logger.error(f"⚠️  Error loading settings from database: {e}")

    @staticmethod
    def get_engine_setting(db_service, key: str) -> str:
        """
        Read one of ENGINE_SETTINGS: the settings table first, then the
        environment, then the default.
        """
        value = None
        if db_service is not None:
            value = db_service.get_setting(key)
        if value is None or str(value).strip() == "":
            value = os.environ.get(key) or DEFAULT_CONFIG.get(key, "")
        return str(value).strip()

    @staticmethod
    def update_engine_settings(db_service: DatabaseService, updates: dict) -> dict:
        """
        Persist backend/model/language changes. Returns the keys that actually
        changed; raises ValueError on an unknown key or backend.
        """
        changed = {}
        for key, value in updates.items():
            if key not in ENGINE_SETTINGS:
                raise ValueError(f"Unknown setting: {key}")
            value = str(value).strip()
            if key == 'TRANSCRIPTION_BACKEND' and value not in VALID_BACKENDS:
                raise ValueError(f"Unknown backend '{value}', expected one of {', '.join(VALID_BACKENDS)}")
            if not value:
                raise ValueError(f"{key} cannot be empty")
            if ConfigLoader.get_engine_setting(db_service, key) != value:
                db_service.set_setting(key, value)
                os.environ[key] = value
                changed[key] = value
        if changed:
            logger.info(f"⚙️  Updated engine settings: {changed}")
        return changed
