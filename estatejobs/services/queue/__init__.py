from estatejobs.services.queue.dispatch import (
    QueueResult,
    enqueue_file_ai_job,
    enqueue_initial_visit_property_extraction_job,
    enqueue_message_ai_job,
    enqueue_vocal_insights_job,
    enqueue_vocal_transcription_job,
    enqueue_vocal_type_detection_job,
)
from estatejobs.services.queue.runtime import (
    QueueRuntime,
    get_metrics_snapshot,
    get_queue_runtime,
    reset_metrics,
)

__all__ = [
    "QueueResult",
    "QueueRuntime",
    "enqueue_file_ai_job",
    "enqueue_initial_visit_property_extraction_job",
    "enqueue_message_ai_job",
    "enqueue_vocal_insights_job",
    "enqueue_vocal_transcription_job",
    "enqueue_vocal_type_detection_job",
    "get_metrics_snapshot",
    "get_queue_runtime",
    "reset_metrics",
]
