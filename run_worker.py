"""Run the registration worker until SIGINT or SIGTERM."""
from __future__ import annotations

import argparse
import signal
import sys

from config import JOB_BACKEND, JOB_STATUS_TTL_S, WORKER_MAX_RETRIES, WORKER_RETRY_DELAY_S
from jobs import JobWorker, RetryPolicy, create_backends
from observability.logger import get_logger
from services.registry_client import CloudflareExecutor

LOGGER = get_logger("bip353.worker")


def main() -> int:
    parser = argparse.ArgumentParser(description="Process queued BIP353 registrations")
    parser.add_argument("--max-retries", type=int, default=WORKER_MAX_RETRIES, help="Retry budget per job")
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=WORKER_RETRY_DELAY_S,
        help="Base backoff delay in seconds, doubled per retry",
    )
    args = parser.parse_args()

    if JOB_BACKEND != "redis":
        LOGGER.error("worker_requires_redis", extra={"backend": JOB_BACKEND})
        return 1

    store, work_queue = create_backends()
    executor = CloudflareExecutor()
    worker = JobWorker(
        store,
        work_queue,
        executor,
        retry_policy=RetryPolicy(max_retries=max(0, args.max_retries), base_delay=max(0.0, args.retry_delay)),
        status_ttl=JOB_STATUS_TTL_S,
    )

    def _shutdown(signum, _frame) -> None:
        LOGGER.info("worker_shutdown_requested", extra={"signal": signal.Signals(signum).name})
        worker.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _shutdown)

    try:
        worker.run_forever()
    finally:
        executor.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
