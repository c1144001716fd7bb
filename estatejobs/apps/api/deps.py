from __future__ import annotations

from estatejobs.services.queue.runtime import QueueRuntime, get_queue_runtime


def get_runtime() -> QueueRuntime:
    # Route-level seam so tests can swap in a runtime with fake collaborators.
    return get_queue_runtime()
