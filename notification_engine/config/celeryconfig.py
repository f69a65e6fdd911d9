from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = settings.redis_url
result_backend = settings.redis_url

# Task Discovery
include = ["notification_engine.tasks"]

# Timezone Configuration
timezone = settings.SCHEDULER_TIMEZONE
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 30 * 60  # 30 minutes
task_soft_time_limit = 25 * 60  # 25 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000
worker_hijack_root_logger = False

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

# Exponential Backoff Settings
task_retry_backoff = True
task_retry_backoff_max = 700  # Max 700 seconds
task_retry_jitter = False

_KIND_EVALUATOR_TASK = (
    "notification_engine.tasks.cron.notification_kind_evaluator"
    ".evaluate_notification_kind_task"
)

beat_schedule = {
    # Reminder kinds - cadence must stay below twice the kind's tolerance
    "event-reminder-evaluator": {
        "task": _KIND_EVALUATOR_TASK,
        "schedule": crontab(minute="*/5"),
        "args": ("event_reminder_cron", "event_reminder"),
    },
    "checkin-reminder-evaluator": {
        "task": _KIND_EVALUATOR_TASK,
        "schedule": crontab(minute="*/5"),
        "args": ("checkin_reminder_cron", "checkin_reminder"),
    },
    "registration-deadline-evaluator": {
        "task": _KIND_EVALUATOR_TASK,
        "schedule": crontab(minute="*/15"),
        "args": ("registration_deadline_cron", "registration_deadline"),
    },
    "payment-reminder-evaluator": {
        "task": _KIND_EVALUATOR_TASK,
        "schedule": crontab(hour=9, minute=0),
        "args": ("payment_reminder_cron", "payment_reminder"),
    },
    "profile-completion-evaluator": {
        "task": _KIND_EVALUATOR_TASK,
        "schedule": crontab(hour=10, minute=0),
        "args": ("profile_completion_cron", "profile_completion"),
    },
    # Delivery maintenance - every minute
    "notification-retry-sweeper": {
        "task": "notification_engine.tasks.cron.notification_retry_sweeper.notification_retry_sweeper_task",
        "schedule": crontab(),
        "args": ("notification_retry_sweeper_cron",),
    },
    "outbound-queue-processor": {
        "task": "notification_engine.tasks.cron.outbound_queue_processor.outbound_queue_processor_task",
        "schedule": crontab(),
        "args": ("outbound_queue_processor_cron",),
    },
    # Daily producers and cleanup
    "daily-digest-producer": {
        "task": "notification_engine.tasks.cron.daily_digest_producer.daily_digest_producer_task",
        "schedule": crontab(hour=7, minute=0),
        "args": ("daily_digest_producer_cron",),
    },
    "notification-retention-cleanup": {
        "task": "notification_engine.tasks.cron.notification_retention_cleanup.notification_retention_cleanup_task",
        "schedule": crontab(hour=2, minute=30),
        "args": ("notification_retention_cleanup_cron",),
    },
}

# Default Queue
task_default_queue = "notifications"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
