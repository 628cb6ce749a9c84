from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import requests
import structlog

from ..core.models import Job, JobStatus

log = structlog.get_logger(__name__)


class WebhookNotifier:
    """POSTs the terminal job payload to the job's ``callback_url``."""

    def __init__(self, timeout_s: float = 5.0, max_workers: int = 2, session: requests.Session | None = None):
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sbx-callback")

    def __call__(self, job: Job, status: JobStatus) -> None:
        if job.callback_url:
            self._pool.submit(self.deliver, job.callback_url, status)

    def deliver(self, url: str, status: JobStatus) -> bool:
        try:
            resp = self.session.post(url, json=status.as_dict(), timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.RequestException as e:
            log.warning("callback_failed", job_id=status.job_id, url=url, error=str(e))
            return False
        log.info("callback_delivered", job_id=status.job_id, url=url, http_status=resp.status_code)
        return True

    def close(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self.session.close()
