"""
Compute backend detection, model artifact management and the shared engine handle.

Backend choice is memoized per process. The engine handle is built lazily,
kept across jobs, and rebuilt only when the model setting changes or after
reset_backend_detection().
"""

import ctypes.util
import gc
import logging
import os
import platform
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import requests

from src.utils.config_loader import ConfigLoader, DEFAULT_CONFIG, VALID_BACKENDS, get_env_float, get_env_int
from src.utils.errors import EngineInitializationError, EngineUnavailableError, ModelDownloadError
from src.utils.transcription_providers import LocalWhisperProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = DEFAULT_CONFIG['TRANSCRIPTION_MODEL']
DEFAULT_REGISTRY_URL = DEFAULT_CONFIG['MODEL_REGISTRY_URL']

# Files making up a CTranslate2 Whisper conversion
MODEL_FILES = ('config.json', 'model.bin', 'tokenizer.json', 'vocabulary.txt')
LARGE_V3_MODEL_FILES = ('config.json', 'model.bin', 'tokenizer.json', 'vocabulary.json', 'preprocessor_config.json')

_ARCH_ALIASES = {'x86_64': 'x64', 'amd64': 'x64', 'arm64': 'arm64', 'aarch64': 'arm64'}


def current_platform() -> Tuple[str, str]:
    """(platform, arch) in the form the probes expect, e.g. ('darwin', 'arm64')."""
    plat = sys.platform
    if plat.startswith('linux'):
        plat = 'linux'
    machine = platform.machine().lower()
    return plat, _ARCH_ALIASES.get(machine, machine)


def model_files(model_name: str) -> Tuple[str, ...]:
    if model_name.startswith('large-v3'):
        return LARGE_V3_MODEL_FILES
    return MODEL_FILES


@dataclass(frozen=True)
class BackendDescriptor:
    name: str
    gpu: bool
    variant: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {'backend': self.name, 'gpu': self.gpu, 'variant': self.variant, 'reason': self.reason}


class BackendProbe(ABC):
    """A compute backend that may or may not be usable on this machine."""

    name = ""
    gpu = False
    variant = None
    label = ""
    platforms: Tuple[str, ...] = ()

    def supports_platform(self, plat: str, arch: str) -> bool:
        return plat in self.platforms

    @abstractmethod
    def is_available(self) -> bool:
        """True when the backend can actually be used right now."""

    def descriptor(self, reason: str) -> BackendDescriptor:
        return BackendDescriptor(self.name, self.gpu, self.variant, reason)


class MetalProbe(BackendProbe):
    name = 'metal'
    gpu = True
    label = 'macOS Apple Silicon'

    def supports_platform(self, plat: str, arch: str) -> bool:
        return plat == 'darwin' and arch == 'arm64'

    def is_available(self) -> bool:
        # Every Apple Silicon Mac ships Metal
        return True


class CudaProbe(BackendProbe):
    name = 'cuda'
    gpu = True
    variant = 'cuda'
    label = 'CUDA'
    platforms = ('win32', 'linux')

    def is_available(self) -> bool:
        try:
            import ctranslate2
            count = ctranslate2.get_cuda_device_count()
        except Exception as e:
            logger.debug(f"CUDA probe failed: {e}")
            return False
        if count > 0:
            logger.info(f"🎮 CUDA available: {count} device(s)")
        return count > 0


class VulkanProbe(BackendProbe):
    name = 'vulkan'
    gpu = True
    variant = 'vulkan'
    label = 'Vulkan'
    platforms = ('win32', 'linux')

    def is_available(self) -> bool:
        return any(ctypes.util.find_library(lib) for lib in ('vulkan', 'vulkan-1'))


class CpuProbe(BackendProbe):
    name = 'cpu'
    label = 'CPU'

    def supports_platform(self, plat: str, arch: str) -> bool:
        return True

    def is_available(self) -> bool:
        return True


def default_probes() -> List[BackendProbe]:
    """Probes in auto-detection order; CPU last as the catch-all."""
    return [MetalProbe(), CudaProbe(), VulkanProbe(), CpuProbe()]


class BackendSelector:
    def __init__(self, database_service=None, models_dir=None, probes: List[BackendProbe] = None,
                 engine_factory=None, platform_info: Tuple[str, str] = None, registry_url: str = None,
                 download_timeout: float = None, http_session=None):
        self.database_service = database_service
        if models_dir:
            self.models_dir = Path(models_dir)
        else:
            self.models_dir = Path(os.environ.get("DATA_DIR", "/data")) / "models"
        self.probes = probes if probes is not None else default_probes()
        self.engine_factory = engine_factory or LocalWhisperProvider
        self.platform, self.arch = platform_info or current_platform()
        self.registry_url = registry_url or os.environ.get("MODEL_REGISTRY_URL") or DEFAULT_REGISTRY_URL
        self.download_timeout = download_timeout or get_env_float("MODEL_DOWNLOAD_TIMEOUT", 60.0)
        self.session = http_session or requests.Session()

        # Re-entrant: get_engine_context() calls detect() while holding it
        self._lock = threading.RLock()
        self._backend: Optional[BackendDescriptor] = None
        self._engine = None
        self._engine_model: Optional[str] = None

    def get_setting(self, key: str) -> str:
        return ConfigLoader.get_engine_setting(self.database_service, key)

    def get_model_name(self) -> str:
        return self.get_setting('TRANSCRIPTION_MODEL') or DEFAULT_MODEL

    def get_language(self) -> Optional[str]:
        """Configured ISO language code, or None for engine auto-detection."""
        language = self.get_setting('TRANSCRIPTION_LANGUAGE') or 'en'
        return None if language.lower() == 'auto' else language

    # Backend detection
    def detect(self) -> BackendDescriptor:
        """Return the memoized backend choice, detecting it on first use."""
        with self._lock:
            if self._backend is None:
                self._backend = self._select_backend()
                logger.info(f"🖥️ Transcription backend: {self._backend.name} "
                            f"(gpu={self._backend.gpu}, reason={self._backend.reason})")
            return self._backend

    def _select_backend(self) -> BackendDescriptor:
        preference = (self.get_setting('TRANSCRIPTION_BACKEND') or 'auto').lower()
        if preference not in VALID_BACKENDS:
            logger.warning(f"⚠️ Unknown backend preference '{preference}', using auto-detection")
            preference = 'auto'

        if preference != 'auto':
            for probe in self.probes:
                if probe.name == preference:
                    return probe.descriptor('manual override')
            logger.warning(f"⚠️ No probe registered for '{preference}', using auto-detection")

        for probe in self.probes:
            if not probe.supports_platform(self.platform, self.arch):
                continue
            if probe.gpu and not probe.is_available():
                continue
            if probe.gpu:
                return probe.descriptor(f"auto-detected ({probe.label})")
            if self.platform == 'darwin':
                return probe.descriptor("auto-detected (macOS Intel, no GPU path)")
            if self.platform in ('win32', 'linux'):
                return probe.descriptor("no GPU backend available")
            return probe.descriptor(f"unsupported platform '{self.platform}'")

        return BackendDescriptor('cpu', False, None, 'no probe matched')

    # Model artifacts
    def model_path(self, model_name: str) -> Path:
        return self.models_dir / f"faster-whisper-{model_name}"

    def is_model_downloaded(self, model_name: str) -> bool:
        model_dir = self.model_path(model_name)
        return all((model_dir / filename).exists() for filename in model_files(model_name))

    def ensure_model(self, model_name: str) -> Path:
        """
        Return the local directory of a model, downloading missing files first.

        Each file lands under a '.tmp' name and is renamed into place only
        once complete, so a present file is always a complete one.
        """
        model_dir = self.model_path(model_name)
        missing = [f for f in model_files(model_name) if not (model_dir / f).exists()]
        if not missing:
            return model_dir

        model_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"⬇️ Downloading model '{model_name}' ({len(missing)} files) to {model_dir}")
        for filename in missing:
            url = self.registry_url.format(model=model_name, filename=filename)
            self._download_file(url, model_dir / filename)

        logger.info(f"✅ Model '{model_name}' ready at {model_dir}")
        return model_dir

    def _download_file(self, url: str, dest: Path):
        tmp_path = dest.with_name(dest.name + '.tmp')
        try:
            response = self.session.get(url, stream=True, timeout=self.download_timeout, allow_redirects=True)
            try:
                if not 200 <= response.status_code < 300:
                    raise ModelDownloadError(f"Model download failed with HTTP {response.status_code}: {url}")
                with open(tmp_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        if chunk:
                            f.write(chunk)
            finally:
                response.close()
            os.replace(tmp_path, dest)
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            if isinstance(e, ModelDownloadError):
                raise
            raise ModelDownloadError(f"Model download failed for {url}: {e}") from e

    # Engine handle
    def engine_available(self) -> bool:
        check = getattr(self.engine_factory, 'is_available', None)
        return check() if callable(check) else True

    def get_engine_context(self):
        """
        Return the shared engine handle, building it on first use or after a
        model change. A GPU load failure is retried once on CPU and the CPU
        descriptor then sticks until reset_backend_detection().
        """
        with self._lock:
            model_name = self.get_model_name()
            if self._engine is not None and self._engine_model == model_name:
                return self._engine

            if self._engine is not None:
                logger.info(f"🔄 Model changed ({self._engine_model} -> {model_name}), releasing engine")
                self._release_engine()

            if not self.engine_available():
                raise EngineUnavailableError("Speech recognition engine is not installed")

            backend = self.detect()
            model_dir = self.ensure_model(model_name)

            try:
                engine = self._build_engine(model_dir, backend)
            except EngineUnavailableError:
                raise
            except Exception as e:
                if not backend.gpu:
                    raise EngineInitializationError(f"Failed to load model '{model_name}' on CPU: {e}") from e

                logger.warning(f"⚠️ {backend.name} initialization failed: {e}. Retrying on CPU")
                fallback = BackendDescriptor('cpu', False, None, 'fallback after GPU failure')
                try:
                    engine = self._build_engine(model_dir, fallback)
                except EngineUnavailableError:
                    raise
                except Exception as cpu_error:
                    raise EngineInitializationError(
                        f"Failed to load model '{model_name}' on {backend.name} and on CPU fallback: {cpu_error}"
                    ) from cpu_error
                self._backend = fallback

            self._engine = engine
            self._engine_model = model_name
            return engine

    def _build_engine(self, model_dir: Path, backend: BackendDescriptor):
        return self.engine_factory(model_dir, backend, cpu_threads=get_env_int("WHISPER_CPU_THREADS", 4))

    def _release_engine(self):
        engine, self._engine, self._engine_model = self._engine, None, None
        if engine is None:
            return
        try:
            engine.release()
        except Exception as e:
            logger.warning(f"⚠️ Failed to release engine cleanly: {e}")
        gc.collect()

    def reset_backend_detection(self):
        """Forget the backend choice and drop the engine; the next use re-detects."""
        with self._lock:
            self._backend = None
            self._release_engine()
        logger.info("🔄 Backend detection reset")

    def get_status(self) -> dict:
        backend = self.detect()
        model_name = self.get_model_name()
        return {
            'available': self.engine_available(),
            'backend': backend.name,
            'gpu': backend.gpu,
            'variant': backend.variant,
            'reason': backend.reason,
            'model': model_name,
            'modelDownloaded': self.is_model_downloaded(model_name),
            'modelPath': str(self.model_path(model_name)),
            'language': self.get_setting('TRANSCRIPTION_LANGUAGE') or 'en',
            'platform': self.platform,
            'arch': self.arch,
        }
