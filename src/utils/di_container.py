#!/usr/bin/env python3
"""
Dependency Injection Container for the follow-along pipeline.
Wires the database, engine, extraction, alignment and job services together.
"""

import logging
import os
from pathlib import Path

from dependency_injector import containers, providers

from src.db.database_service import DatabaseService
from src.services.alignment_service import AlignmentService
from src.services.job_orchestrator import JobOrchestrator
from src.services.library_service import LibraryService
from src.utils.backend_selector import BackendSelector
from src.utils.polisher import Polisher
from src.utils.text_extractor import TextExtractor
from src.utils.transcriber import AudioTranscriber

logger = logging.getLogger(__name__)


def _data_dir() -> Path:
    return Path(os.environ.get("DATA_DIR", "/data"))


def _models_dir() -> Path:
    # MODELS_DIR may be stored as an empty setting; fall back to DATA_DIR/models
    configured = os.environ.get("MODELS_DIR", "").strip()
    return Path(configured) if configured else _data_dir() / "models"


class Container(containers.DeclarativeContainer):
    """Application container. Singletons are created on first access."""

    data_dir = providers.Callable(_data_dir)
    models_dir = providers.Callable(_models_dir)

    database_service = providers.Singleton(
        DatabaseService,
        db_path=providers.Callable(lambda: str(_data_dir() / "database.db"))
    )

    polisher = providers.Singleton(Polisher)

    library_service = providers.Singleton(
        LibraryService,
        database_service=database_service
    )

    backend_selector = providers.Singleton(
        BackendSelector,
        database_service=database_service,
        models_dir=models_dir
    )

    transcriber = providers.Singleton(
        AudioTranscriber,
        database_service=database_service,
        backend_selector=backend_selector,
        polisher=polisher,
        library_service=library_service
    )

    text_extractor = providers.Singleton(
        TextExtractor,
        polisher=polisher,
        data_dir=data_dir
    )

    alignment_service = providers.Singleton(
        AlignmentService,
        database_service=database_service,
        polisher=polisher
    )

    job_orchestrator = providers.Singleton(
        JobOrchestrator,
        database_service=database_service,
        transcriber=transcriber,
        text_extractor=text_extractor,
        alignment_service=alignment_service,
        library_service=library_service
    )


def create_container() -> Container:
    """Create the production container. Settings must already be loaded into os.environ."""
    container = Container()
    logger.debug(f"DI container created (DATA_DIR={_data_dir()})")
    return container
