import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from dependency_injector import providers
from flask import Flask, request, jsonify

from src.api.transcription_routes import transcription_bp, init_transcription_routes
from src.db.database_service import DatabaseService
from src.services.job_orchestrator import JobOrchestrator
from src.utils.config_loader import ConfigLoader
from src.utils.di_container import Container
# Import memory logging setup - this must happen early to capture all logs
from src.utils.logging_utils import memory_log_handler, LOG_PATH
from src.version import APP_VERSION

# ---------------- APP SETUP ----------------

logger = logging.getLogger(__name__)

# Global variables - will be initialized via setup_dependencies()
container: Optional[Container] = None
orchestrator: Optional[JobOrchestrator] = None
database_service: Optional[DatabaseService] = None
DATA_DIR: Optional[Path] = None


def setup_dependencies(test_container=None):
    """
    Initialize dependencies for the web server.

    Args:
        test_container: Optional test container for dependency injection during testing.
                       If None, creates production container from environment.
    """
    global container, orchestrator, database_service, DATA_DIR

    # 1. Initialize Database Service FIRST (needed to load settings).
    # DATA_DIR locates the database itself, so it only ever comes from the environment.
    initial_data_dir = Path(os.environ.get("DATA_DIR", "/data"))
    from src.db.migration_utils import initialize_database
    database_service = initialize_database(initial_data_dir)

    # 2. Seed settings on first run, then load them into os.environ
    if database_service:
        ConfigLoader.bootstrap_config(database_service)
        ConfigLoader.load_settings(database_service)
        logger.info("✅ Settings loaded into environment variables")

    if test_container is not None:
        container = test_container
    else:
        # 3. Create production container AFTER loading settings so providers see them
        from src.utils.di_container import create_container
        container = create_container()

    # 4. Override the container's database_service with our already-initialized instance
    container.database_service.override(providers.Object(database_service))

    orchestrator = container.job_orchestrator()
    DATA_DIR = container.data_dir()

    logger.info(f"Web server dependencies initialized (DATA_DIR={DATA_DIR})")


def create_app(test_container=None):
    """Build the Flask app. Returns (app, container)."""
    setup_dependencies(test_container)

    app = Flask(__name__)
    init_transcription_routes(database_service, container)
    app.register_blueprint(transcription_bp)
    app.add_url_rule('/api/logs/live', 'api_logs_live', api_logs_live)
    app.add_url_rule('/healthcheck', 'healthcheck', healthcheck)

    return app, container


def healthcheck():
    """Liveness check with a summary of the job queue."""
    return jsonify({
        'status': 'ok',
        'version': APP_VERSION,
        'queuedJobs': len(orchestrator.queued_job_ids()) if orchestrator else 0,
    })


def api_logs_live():
    """API endpoint for fetching recent live logs from memory."""
    try:
        # Get query parameters
        count = request.args.get('count', 50, type=int)
        min_level = request.args.get('level', 'DEBUG')
        search_term = request.args.get('search', '').lower()

        # Limit count for performance
        count = min(count, 500)

        log_levels = {
            'DEBUG': 10, 'INFO': 20, 'WARNING': 30, 'ERROR': 40, 'CRITICAL': 50
        }
        min_level_num = log_levels.get(min_level.upper(), 10)

        recent_logs = memory_log_handler.get_recent_logs(count * 2)  # Get more to filter

        filtered_logs = []
        for log_entry in recent_logs:
            level_num = log_levels.get(log_entry['level'], 20)
            if level_num < min_level_num:
                continue
            if search_term and search_term not in log_entry['message'].lower() \
                    and search_term not in log_entry['level'].lower():
                continue
            filtered_logs.append(log_entry)

        result_logs = filtered_logs[-count:] if len(filtered_logs) > count else filtered_logs

        return jsonify({
            'logs': result_logs,
            'timestamp': datetime.now().isoformat()
        })

    except Exception as e:
        logger.error(f"Error fetching live logs: {e}")
        return jsonify({'error': 'Failed to fetch live logs', 'logs': [], 'timestamp': datetime.now().isoformat()}), 500


if __name__ == '__main__':
    app, _ = create_app()

    def handle_exit_signal(signum, frame):
        logger.warning(f"⚠️ Received signal {signum} - Shutting down...")
        # Interrupted jobs are picked up again by resume_pending_jobs() on next start
        for handler in logging.getLogger().handlers:
            handler.flush()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_exit_signal)
    signal.signal(signal.SIGINT, handle_exit_signal)

    logger.info(f"=== Follow-Along Pipeline {APP_VERSION} Started ===")
    logger.info(f"📝 Logging to {LOG_PATH}")

    resumed = orchestrator.resume_pending_jobs()
    if resumed:
        logger.info(f"🔁 Resumed {resumed} interrupted job(s)")

    port = int(os.environ.get('PORT', '5757'))
    logger.info(f"🌐 Web interface starting on port {port}")
    app.run(host='0.0.0.0', port=port, debug=False)
