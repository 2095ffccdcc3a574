from api.src.services.github import (
    RepositoryError,
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    parse_webhook_payload,
    parse_webhook_event,
    cleanup_repo,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    send_control,
    get_run_status,
    get_queue_length,
)
from api.src.services.dispatch import process_event

__all__ = [
    "RepositoryError",
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "parse_webhook_event",
    "cleanup_repo",
    "enqueue_pipeline_run",
    "send_control",
    "get_run_status",
    "get_queue_length",
    "process_event",
]
