from __future__ import annotations

from arq.worker import run_worker

from qreports.core.logging import configure_logging
from qreports.workers.render_worker import WorkerSettings


def main() -> None:
    # Equivalent to `arq qreports.workers.render_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
