from __future__ import annotations

import sys

from estatejobs.workers.ai_worker import main


if __name__ == "__main__":
    # Exit non-zero when the broker is unreachable so supervisors restart the worker.
    sys.exit(main())
