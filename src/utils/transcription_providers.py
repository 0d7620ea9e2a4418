"""
Engine handles for local speech recognition.

A provider is built once per (model, backend) by the BackendSelector and
reused for every chapter until the model setting changes or the backend is
reset.
"""

import importlib.util
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from src.utils.errors import EngineUnavailableError

logger = logging.getLogger(__name__)


class TranscriptionProvider(ABC):
    """Abstract base class for persistent engine handles."""

    @abstractmethod
    def transcribe(self, audio_path: Path, language: Optional[str] = None) -> List[dict]:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path to the audio file
            language: ISO language code, or None to let the engine detect it

        Returns:
            Ordered list of dicts with 'text', 'start_ms', 'end_ms' keys,
            relative to the start of the file
        """

    @abstractmethod
    def release(self):
        """Free the model and any device memory it holds."""

    @abstractmethod
    def get_name(self) -> str:
        """Return the provider name for logging."""


class LocalWhisperProvider(TranscriptionProvider):
    """Local Whisper transcription using faster-whisper (CTranslate2)."""

    def __init__(self, model_path, backend, cpu_threads: int = 4):
        try:
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise EngineUnavailableError("faster-whisper is not installed") from e

        self.model_path = Path(model_path)
        self.backend = backend
        device, compute_type = self.get_device_config(backend)
        logger.info(f"⚙️ Loading Whisper: model={self.model_path.name}, backend={backend.name}, "
                    f"device={device}, compute_type={compute_type}")

        model_kwargs = {'device': device, 'compute_type': compute_type}
        if device == 'cpu':
            model_kwargs['cpu_threads'] = cpu_threads

        self._model = WhisperModel(str(self.model_path), **model_kwargs)

    @staticmethod
    def is_available() -> bool:
        return importlib.util.find_spec("faster_whisper") is not None

    @staticmethod
    def get_device_config(backend) -> tuple[str, str]:
        """
        Map a backend descriptor onto a CTranslate2 device and compute type.

        CTranslate2 has no Metal or Vulkan device; those backends let it pick
        the best device it supports.
        """
        if backend.name == 'cuda':
            return 'cuda', 'float16'
        if backend.name == 'cpu':
            return 'cpu', 'int8'
        return 'auto', 'default'

    def get_name(self) -> str:
        return f"LocalWhisper ({self.model_path.name} on {self.backend.name})"

    def transcribe(self, audio_path: Path, language: Optional[str] = None) -> List[dict]:
        if self._model is None:
            raise RuntimeError(f"{self.get_name()} has been released")

        logger.info(f"🧠 Transcribing with {self.get_name()}: {Path(audio_path).name}")
        segments, info = self._model.transcribe(str(audio_path), language=language, beam_size=1, best_of=1)

        fragments = []
        for segment in segments:
            fragments.append({
                'text': segment.text.strip(),
                'start_ms': int(round(segment.start * 1000)),
                'end_ms': int(round(segment.end * 1000)),
            })

        logger.info(f"✅ Transcription complete: {len(fragments)} segments")
        return fragments

    def release(self):
        self._model = None
