import logging
import os
import re
import threading
import time
from collections import deque
from datetime import datetime
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)

_SECRET_QUERY_RE = re.compile(r'(?i)\b(token|key|api_key|access_token|password)=([^&\s]+)')


class MemoryLogHandler(logging.Handler):
    """Log handler that keeps logs in memory for real-time streaming."""

    def __init__(self, maxlen=1000):
        super().__init__()
        self.logs = deque(maxlen=maxlen)
        self.maxlen = maxlen
        self._buffer_lock = threading.Lock()

    def emit(self, record):
        try:
            log_entry = {
                'timestamp': datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S'),
                'level': record.levelname,
                'message': record.getMessage(),
                'module': record.name
            }
        except Exception:
            self.handleError(record)
            return
        # The job worker and request threads log concurrently
        with self._buffer_lock:
            self.logs.append(log_entry)

    def get_recent_logs(self, count=100):
        """Get the most recent logs up to specified count."""
        with self._buffer_lock:
            logs = list(self.logs)
        return logs[-count:] if len(logs) > count else logs


def setup_file_logging():
    """Setup file logging handler."""
    DATA_DIR = Path(os.environ.get("DATA_DIR", "/data"))
    if not DATA_DIR.exists():
        logger.warning("Not setting up file logging because missing data dir")
        return ""

    LOG_DIR = DATA_DIR / "logs"
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    LOG_PATH = LOG_DIR / "followalong.log"
    log_level = getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)

    file_handler = RotatingFileHandler(str(LOG_PATH), maxBytes=10*1024*1024, backupCount=5, encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s - %(name)s: %(message)s'))

    # Attach to the root logger so all module loggers go to the same file
    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)

    return LOG_PATH


def setup_console_logging():
    """Setup console logging handler."""
    console_handler = logging.StreamHandler()
    log_level = getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

    root_logger = logging.getLogger()
    root_logger.addHandler(console_handler)

    # Root passes everything through; each handler filters on its own level
    root_logger.setLevel(logging.DEBUG)

    # Werkzeug access lines would otherwise be duplicated through the root logger
    werkzeug_logger = logging.getLogger('werkzeug')
    werkzeug_logger.propagate = False
    werkzeug_logger.setLevel(logging.WARNING)

    # faster-whisper logs every decoded window at INFO
    logging.getLogger('faster_whisper').setLevel(logging.WARNING)


def setup_memory_logging():
    """Setup memory log handler to capture logs from all modules."""
    memory_handler = MemoryLogHandler()
    memory_handler.setLevel(logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.addHandler(memory_handler)

    return memory_handler


def sanitize_log_data(data):
    """Mask credentials in query strings, then truncate long strings to "First 50... [truncated] ...Last 50"."""
    if data is None:
        return ""
    try:
        s = str(data)
    except Exception:
        return "[unrepresentable]"
    s = _SECRET_QUERY_RE.sub(lambda m: f"{m.group(1)}=******", s)
    if len(s) <= 100:
        return s
    return f"{s[:50]}... [truncated] ...{s[-50:]}"


def time_execution(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        start = time.time()
        result = func(*args, **kwargs)
        ms = int((time.time() - start) * 1000)
        logger.info(f"⏱️ [{func.__name__}] took {ms}ms")
        return result
    return wrapper


# Global instances, initialized when the module is first imported
LOG_PATH = setup_file_logging()
setup_console_logging()
memory_log_handler = setup_memory_logging()
