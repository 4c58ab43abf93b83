"""Lifeboat — local service health monitor and recovery console.

The app factory wires the recovery manager, the activity log and the
blueprints together: ``from lifeboat import create_app``.
"""

import logging

from flask import Flask
from flask_cors import CORS

import config
from lifeboat.services import activity_log
from lifeboat.services.events import EventBroadcaster
from lifeboat.services.recovery import RecoveryManager
from lifeboat.services.registry import ServiceRegistry


def create_app(manager=None, start_stats_loop=True):
    """Create and configure the Flask application.

    Args:
        manager: A ready RecoveryManager.  When None, one is built from
            ``config`` and registry.yaml.
        start_stats_loop: If True, start the background stats refresh
            thread.  Set to False during testing.
    """
    application = Flask(
        __name__,
        template_folder=str(config.BASE_DIR / "templates"),
    )

    # CORS
    CORS(application)

    # Logging
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if manager is None:
        registry = ServiceRegistry(config.REGISTRY_PATH)
        manager = RecoveryManager(registry, broadcaster=EventBroadcaster())

    # Recovery log lines go to the daily file and the event stream.
    log_feed = activity_log.install(
        manager.broadcaster,
        config.LOGS_DIR,
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    )

    application.config["RECOVERY_MANAGER"] = manager
    application.config["LOG_FEED"] = log_feed

    if start_stats_loop:
        manager.start_stats_loop()

    # Register blueprints
    from lifeboat.routes.status import status_bp
    from lifeboat.routes.recovery import recovery_bp
    from lifeboat.routes.events import events_bp
    from lifeboat.routes.history import history_bp
    from lifeboat.routes.web import web_bp

    application.register_blueprint(status_bp)
    application.register_blueprint(recovery_bp)
    application.register_blueprint(events_bp)
    application.register_blueprint(history_bp)
    application.register_blueprint(web_bp)

    return application
