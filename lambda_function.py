"""AWS Lambda handler for scheduled calendar-to-cleaning-job sync."""
import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from feed.fetcher import CalendarFetcher
from feed.parser import CalendarParser
from notifier.push_notifier import ExpoPushNotifier, LoggingNotifier
from processor.job_reconciler import JobReconciler
from storage.dynamodb_manager import DynamoDBManager
from sync.orchestrator import SyncOrchestrator


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        # Fields passed through extra=
        for key, value in vars(record).items():
            if key not in self.RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    """Runtime configuration read from environment variables."""
    properties_table: str
    jobs_table: str
    cleaners_table: str
    profiles_table: Optional[str]
    log_level: str
    timezone: str
    horizon_days: int
    timeout_seconds: int
    sync_timeout_seconds: float
    max_concurrency: int
    fetch_attempts: int
    max_active_jobs: Optional[int]
    push_notifications_enabled: bool


def load_settings() -> Settings:
    """Read configuration from the environment."""
    max_active_jobs = os.environ.get('MAX_ACTIVE_JOBS', '').strip()
    return Settings(
        properties_table=os.environ.get('PROPERTIES_TABLE', 'properties'),
        jobs_table=os.environ.get('JOBS_TABLE', 'cleaning-jobs'),
        cleaners_table=os.environ.get('PROPERTY_CLEANERS_TABLE', 'property-cleaners'),
        profiles_table=os.environ.get('PROFILES_TABLE') or None,
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        timezone=os.environ.get('TIMEZONE', 'UTC'),
        horizon_days=int(os.environ.get('HORIZON_DAYS', '30')),
        timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
        sync_timeout_seconds=float(os.environ.get('SYNC_TIMEOUT_SECONDS', '240')),
        max_concurrency=int(os.environ.get('MAX_CONCURRENCY', '5')),
        fetch_attempts=int(os.environ.get('FETCH_ATTEMPTS', '3')),
        max_active_jobs=int(max_active_jobs) if max_active_jobs else None,
        push_notifications_enabled=os.environ.get(
            'PUSH_NOTIFICATIONS_ENABLED', 'false'
        ).lower() in ('1', 'true', 'yes')
    )


def build_orchestrator(settings: Settings) -> SyncOrchestrator:
    """Wire the sync components from settings."""
    tz = ZoneInfo(settings.timezone)
    storage = DynamoDBManager(
        properties_table=settings.properties_table,
        jobs_table=settings.jobs_table,
        cleaners_table=settings.cleaners_table,
        profiles_table=settings.profiles_table
    )

    if settings.push_notifications_enabled:
        notifier = ExpoPushNotifier(token_lookup=storage.get_push_token)
    else:
        notifier = LoggingNotifier()

    return SyncOrchestrator(
        persistence=storage,
        fetcher=CalendarFetcher(timeout=settings.timeout_seconds),
        parser=CalendarParser(tz=tz),
        reconciler=JobReconciler(tz=tz, max_active_jobs=settings.max_active_jobs),
        notifier=notifier,
        tz=tz,
        horizon_days=settings.horizon_days,
        timeout_seconds=settings.sync_timeout_seconds,
        max_concurrency=settings.max_concurrency,
        fetch_attempts=settings.fetch_attempts
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for calendar sync.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and the sync summary
    """
    settings = load_settings()

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={
            'properties_table': settings.properties_table,
            'jobs_table': settings.jobs_table,
            'horizon_days': settings.horizon_days,
            'sync_timeout_seconds': settings.sync_timeout_seconds
        }
    )

    try:
        orchestrator = build_orchestrator(settings)
        summary = asyncio.run(orchestrator.run_sync())
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Calendar sync failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }

    duration = time.time() - start_time
    logger.info(
        "Lambda execution completed successfully",
        extra={
            'duration_seconds': round(duration, 2),
            'attempted': summary.attempted,
            'succeeded': summary.succeeded,
            'failed': summary.failed,
            'jobs_created': summary.jobs_created
        }
    )

    if summary.attempted == 0:
        message = 'No active properties to sync'
    else:
        message = 'Calendar sync completed'

    body = {'message': message, 'duration_seconds': round(duration, 2)}
    body.update(summary.to_dict())
    return {
        'statusCode': 200,
        'body': json.dumps(body)
    }
