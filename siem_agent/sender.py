"""
Batch delivery to the remote collector.

One send() builds a single transport message and POSTs it as JSON to the
collector's ingestion endpoint. Transport errors and any response whose
"status" is not "success" count as a failed attempt; failed attempts are
retried after a fixed delay until the retry budget is spent.
"""

import logging
import threading
from typing import Optional, Sequence

import requests

from siem_agent.config import SenderConfig, ServerConfig
from siem_agent.errors import DeliveryError
from siem_agent.events import Event, TransportMessage


class BatchSender:
    """Delivers batches over HTTP with a fixed retry interval and budget."""

    def __init__(
        self,
        server: ServerConfig,
        settings: SenderConfig,
        agent_id: str,
        session: Optional[requests.Session] = None,
        cancel: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.server = server
        self.settings = settings
        self.agent_id = agent_id
        self.session = session or requests.Session()
        self.cancel = cancel or threading.Event()
        self.log = logger or logging.getLogger(__name__)

        self.ingest_url = server.base_url + server.ingest_path
        self.health_url = server.base_url + server.health_path

    def send(self, batch: Sequence[Event]) -> int:
        """
        Deliver one batch.

        Returns the number of attempts it took. Raises DeliveryError after
        max_retries + 1 failed attempts, or earlier if the cancel signal is set
        while waiting to retry.
        """
        if not batch:
            return 0

        message = TransportMessage.build(self.agent_id, batch)
        body = message.to_request(self.server.database, self.server.collection)
        max_retries = self.settings.max_retries
        last_error: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            if attempt > 0:
                self.log.info("Retrying delivery (%d/%d)...", attempt, max_retries)
                if self.cancel.wait(self.settings.retry_interval):
                    raise DeliveryError(
                        f"delivery cancelled after {attempt} attempt(s): {last_error}",
                        attempts=attempt, cause=last_error,
                    )

            try:
                self._post(body)
            except DeliveryError as e:
                last_error = e
                self.log.warning("Delivery attempt %d failed: %s", attempt + 1, e)
                continue

            if attempt > 0:
                self.log.info("Delivered after %d attempts", attempt + 1)
            self.log.info(
                "Sent %d event(s) to %s/%s",
                len(batch), self.server.database, self.server.collection,
            )
            return attempt + 1

        raise DeliveryError(
            f"failed to deliver after {max_retries + 1} attempt(s): {last_error}",
            attempts=max_retries + 1, cause=last_error,
        )

    def test_connectivity(self) -> bool:
        """Unauthenticated health check; True only on HTTP 200."""
        try:
            resp = self.session.get(self.health_url, timeout=self.server.timeout)
        except requests.RequestException as e:
            self.log.warning("Collector unreachable at %s: %s", self.health_url, e)
            return False
        if resp.status_code != 200:
            self.log.warning("Collector health check returned HTTP %d", resp.status_code)
            return False
        return True

    def close(self):
        self.session.close()

    def _post(self, body: dict):
        """One delivery attempt. Raises DeliveryError on any failure."""
        try:
            resp = self.session.post(self.ingest_url, json=body, timeout=self.server.timeout)
        except requests.RequestException as e:
            raise DeliveryError(f"request to {self.ingest_url} failed: {e}", cause=e) from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise DeliveryError(
                f"unparseable response (HTTP {resp.status_code}): {resp.text[:200]}", cause=e
            ) from e

        status = payload.get("status") if isinstance(payload, dict) else None
        if status != "success":
            message = payload.get("message", "") if isinstance(payload, dict) else ""
            raise DeliveryError(f"collector error (HTTP {resp.status_code}, status={status!r}): {message}")
