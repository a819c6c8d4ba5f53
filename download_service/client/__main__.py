# download_service/client/__main__.py
"""
Headless dashboard: start downloads for the given file ids, track them with
the dual-timer tracker and log progress until every job has resolved.

    python -m download_service.client 70007 70001
"""

import argparse
import asyncio
from typing import Any, Dict, List

from download_service.client.api import DownloadApiClient
from download_service.client.state import ClientJob
from download_service.client.tracker import JobTracker
from download_service.core.config import get_dashboard_settings
from download_service.core.error_log import init_error_tracking
from download_service.core.exceptions import TransportError
from download_service.core.logging import get_logger, setup_logging

logger = get_logger("dashboard")


class ProgressPrinter:
    """Logs a job whenever its status changes or progress crosses a 10% step."""

    def __init__(self) -> None:
        self._seen: Dict[int, tuple] = {}

    def __call__(self, job: ClientJob) -> None:
        key = (job.status, int(job.progress // 10), job.poll_error)
        if self._seen.get(job.file_id) == key:
            return
        self._seen[job.file_id] = key
        logger.info(
            "Job update",
            file_id=job.file_id,
            status=job.status,
            progress=job.progress,
            job_id=job.job_id,
            error=job.error or job.poll_error,
        )


async def check_health(api: DownloadApiClient) -> bool:
    """Log the server's health report; an unreachable server counts as unhealthy."""
    try:
        report = await api.health()
    except TransportError as e:
        logger.warning("API unreachable", api_url=api.settings.API_URL, error=e.message)
        return False
    logger.info("API health", status=report.get("status"), checks=report.get("checks"))
    return report.get("status") == "healthy"


async def server_side_errors(api: DownloadApiClient) -> List[Dict[str, Any]]:
    """Server error-log entries sharing a trace id with an error captured here."""
    trace_ids = {e.trace_id for e in api.error_log.list() if e.trace_id}
    if not trace_ids:
        return []
    try:
        report = await api.server_errors()
    except TransportError as e:
        logger.warning("Could not fetch server errors", error=e.message)
        return []
    return [
        entry
        for entry in report.get("errors", [])
        if (entry.get("tags") or {}).get("traceId") in trace_ids
    ]


async def run(file_ids: List[int]) -> int:
    settings = get_dashboard_settings()
    init_error_tracking(settings.SENTRY_DSN, environment="dashboard")
    async with DownloadApiClient(settings) as api:
        await check_health(api)
        tracker = JobTracker(api, settings)
        tracker.subscribe(ProgressPrinter())
        try:
            for file_id in file_ids:
                tracker.start(file_id)
            await asyncio.gather(*(tracker.wait(file_id) for file_id in file_ids))
        finally:
            await tracker.close()

        for job in tracker.jobs:
            logger.info("Final state", **job.to_dict())
        for event in api.error_log.list():
            logger.warning(
                "Captured error",
                message=event.message,
                trace_id=event.trace_id,
                tags=event.tags,
            )
        for entry in await server_side_errors(api):
            logger.warning(
                "Matching server error",
                message=entry.get("message"),
                trace_id=entry["tags"]["traceId"],
                tags=entry.get("tags"),
            )
        unresolved = [job for job in tracker.jobs if not job.is_terminal]
        return 1 if unresolved else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Track simulated downloads from the terminal")
    parser.add_argument("file_ids", nargs="+", type=int, help="file ids to download")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--json", action="store_true", help="emit JSON log lines")
    args = parser.parse_args()

    setup_logging(log_level=args.log_level, enable_json=args.json, service="dashboard")
    raise SystemExit(asyncio.run(run(args.file_ids)))


if __name__ == "__main__":
    main()
