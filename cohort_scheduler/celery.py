from celery import Celery
from celery.signals import task_postrun, task_prerun, worker_process_shutdown

from cohort_scheduler.services.delivery_provider import close_delivery_provider
from cohort_scheduler.utils.context import request_id_context

celery = Celery("cohort_scheduler")

# Load configuration from cohort_scheduler.config.celeryconfig module
celery.config_from_object("cohort_scheduler.config.celeryconfig")

_request_id_tokens = {}


@task_prerun.connect
def bind_task_request_id(task_id=None, args=None, kwargs=None, **_):
    """Every task takes the originating request id as its first argument."""
    request_id = (kwargs or {}).get("request_id") or (args[0] if args else None)
    if isinstance(request_id, str):
        _request_id_tokens[task_id] = request_id_context.set(request_id)


@task_postrun.connect
def unbind_task_request_id(task_id=None, **_):
    token = _request_id_tokens.pop(task_id, None)
    if token is not None:
        request_id_context.reset(token)


@worker_process_shutdown.connect
def release_delivery_provider(**_):
    close_delivery_provider()
