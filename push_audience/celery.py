from celery import Celery
from celery.signals import setup_logging

from push_audience.config.settings import settings
from push_audience.utils.logging import CustomizeLogger

celery = Celery(settings.NAME)

# Load configuration from push_audience.config.celeryconfig module
celery.config_from_object("push_audience.config.celeryconfig")


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Keep worker logs on the loguru sinks instead of Celery's own handlers"""
    CustomizeLogger._setup_intercept_handlers()
