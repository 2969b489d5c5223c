from __future__ import annotations

import asyncio
import json
import logging
from functools import partial

import requests

from .errors import CallbackDeliveryError
from .pools import WorkerPool
from .records import JobSnapshot

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 10.0

HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class CallbackDispatcher:
    """At-least-once delivery of job snapshots to client callback URLs.

    The body is serialized once when delivery is requested; every retry
    resends those exact bytes. Failures are logged and never reach the job.
    """

    def __init__(
        self,
        pool: WorkerPool,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 30.0,
    ) -> None:
        self._pool = pool
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._timeout = timeout

    def deliver(self, url: str, snapshot: JobSnapshot) -> None:
        body = json.dumps(snapshot.as_dict()).encode("utf-8")
        self._pool.submit(partial(self._attempt, url, body, 1))

    async def _attempt(self, url: str, body: bytes, attempt: int) -> None:
        try:
            await asyncio.to_thread(self._post, url, body)
        except CallbackDeliveryError as exc:
            if attempt < self._max_attempts:
                logger.warning(
                    "%s on attempt no.%d, retrying in %ss", exc, attempt, self._retry_delay
                )
                self._pool.submit_later(self._retry_delay, partial(self._attempt, url, body, attempt + 1))
            else:
                logger.error("%s on attempt no.%d, giving up", exc, attempt)
            return
        logger.info("Delivered callback to %s on attempt no.%d", url, attempt)

    def _post(self, url: str, body: bytes) -> None:
        try:
            resp = requests.post(url, data=body, headers=HEADERS, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise CallbackDeliveryError(url, str(e)) from e
        if not 200 <= resp.status_code < 300:
            raise CallbackDeliveryError(url, f"http code {resp.status_code}")
