from celery import Celery
from celery.signals import beat_init, setup_logging, worker_init

from notification_engine.providers.loader import validate_runtime_configuration
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger, intercept_worker_loggers

# Create Celery app
celery = Celery("notification_engine")

# Load configuration from notification_engine.config.celeryconfig module
celery.config_from_object("notification_engine.config.celeryconfig")


@setup_logging.connect
def configure_logging(**kwargs):
    # Keep Celery from installing its own handlers; loguru intercepts instead
    intercept_worker_loggers()


@worker_init.connect
@beat_init.connect
def validate_collaborators(**kwargs):
    try:
        validate_runtime_configuration()
    except ConfigurationError as e:
        get_logger().critical(
            "Invalid notification engine configuration", error=e.message
        )
        raise SystemExit(1) from e
