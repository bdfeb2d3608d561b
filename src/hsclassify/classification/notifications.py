"""Low-confidence notifications.

The monitor fires once when a classification's confidence drops below the
threshold and re-arms only after confidence has climbed back above it.
Delivery is fire-and-forget; a failed webhook is logged, never raised.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from hsclassify.classification.models import Classification

logger = logging.getLogger(__name__)

BELOW_THRESHOLD_KEY = "below_low_confidence"


class LowConfidenceNotifier(ABC):
    @abstractmethod
    def notify_low_confidence(
        self, classification_id: str, confidence: float, context: Mapping[str, Any]
    ) -> None:
        raise NotImplementedError


class LoggingNotifier(LowConfidenceNotifier):
    """Writes the notification to the log only."""

    def notify_low_confidence(
        self, classification_id: str, confidence: float, context: Mapping[str, Any]
    ) -> None:
        logger.warning("Low confidence %.2f for classification %s", confidence, classification_id)


class RecordingNotifier(LowConfidenceNotifier):
    """Keeps notifications in memory; handy for tests and dry runs."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def notify_low_confidence(
        self, classification_id: str, confidence: float, context: Mapping[str, Any]
    ) -> None:
        self.sent.append(
            {"classification_id": classification_id, "confidence": confidence, "context": dict(context)}
        )


class WebhookNotifier(LowConfidenceNotifier):
    """POSTs a JSON notification to a webhook on a background thread."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        executor: Optional[ThreadPoolExecutor] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="hsc-webhook")
        self._client = client

    def notify_low_confidence(
        self, classification_id: str, confidence: float, context: Mapping[str, Any]
    ) -> Future:
        payload = {
            "event": "classification.low_confidence",
            "classification_id": classification_id,
            "confidence": confidence,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": dict(context),
        }
        return self._executor.submit(self._post, payload)

    def _post(self, payload: Dict[str, Any]) -> bool:
        """Send the webhook.

        Args:
            payload: JSON body

        Returns:
            True when the endpoint accepted the notification
        """
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                response = httpx.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            logger.info("Webhook fired for classification %s: %s", payload["classification_id"], self.url)
            return True
        except httpx.HTTPError as exc:
            logger.warning("Webhook failed for classification %s: %s", payload["classification_id"], exc)
            return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class LowConfidenceMonitor:
    """Tracks threshold crossings per classification.

    The crossing flag lives in the classification's metadata so it survives
    between requests and across service instances.
    """

    def __init__(self, notifier: LowConfidenceNotifier, threshold: float = 0.7) -> None:
        self.notifier = notifier
        self.threshold = threshold

    def observe(
        self,
        classification: Classification,
        confidence: float,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Update the crossing flag; return True when a notification was sent."""

        below = confidence < self.threshold
        was_below = bool(classification.metadata.get(BELOW_THRESHOLD_KEY, False))
        classification.metadata[BELOW_THRESHOLD_KEY] = below
        if not below or was_below:
            return False
        self.notifier.notify_low_confidence(
            classification.classification_id,
            confidence,
            {"threshold": self.threshold, "step": classification.current_step.value, **dict(context or {})},
        )
        return True
