from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
_redis_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

broker_url = _redis_url
result_backend = _redis_url

# Task Discovery
include = ["cohort_scheduler.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
# A sweep must finish before the next beat tick
task_time_limit = 10 * 60
task_soft_time_limit = 8 * 60

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = settings.DELIVERY_RETRY_BASE_DELAY
task_max_retries = settings.DELIVERY_MAX_ATTEMPTS

# Backoff is computed by the delivery state machine, not by Celery
task_retry_backoff = False
task_retry_jitter = False

# Schedules are expressed in UTC; per-user local time is resolved in the services
beat_schedule = {
    "scheduling-sweep": {
        "task": "cohort_scheduler.tasks.cron.scheduling_sweep.scheduling_sweep_task",
        "schedule": crontab(minute="*/15"),
        "args": ("scheduling_sweep_cron",),
    },
    "message-dispatch": {
        "task": "cohort_scheduler.tasks.cron.message_dispatch.message_dispatch_task",
        "schedule": crontab(minute="*/5"),
        "args": ("message_dispatch_cron",),
    },
    "display-publisher": {
        "task": "cohort_scheduler.tasks.cron.display_publisher.display_publisher_task",
        "schedule": crontab(minute="*/5"),
        "args": ("display_publisher_cron",),
    },
    "delivery-reconciler": {
        "task": "cohort_scheduler.tasks.cron.delivery_reconciler.delivery_reconciler_task",
        "schedule": crontab(minute="*/5"),
        "args": ("delivery_reconciler_cron",),
    },
}

# Provider calls run on their own queue
task_default_queue = "scheduling"
task_routes = {
    "cohort_scheduler.tasks.background.message_enqueuer.*": {"queue": "delivery"},
}

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
