from concurrent.futures import ThreadPoolExecutor

import httpx

from hsclassify.classification.models import Classification
from hsclassify.classification.notifications import LowConfidenceMonitor, RecordingNotifier, WebhookNotifier


def _classification():
    return Classification(classification_id="notify-1", description="Decorative fidget spinner")


def test_monitor_fires_once_per_crossing():
    notifier = RecordingNotifier()
    monitor = LowConfidenceMonitor(notifier, threshold=0.7)
    classification = _classification()

    assert monitor.observe(classification, 0.5)
    assert not monitor.observe(classification, 0.4)
    assert not monitor.observe(classification, 0.9)
    assert monitor.observe(classification, 0.6)

    assert [item["confidence"] for item in notifier.sent] == [0.5, 0.6]
    assert notifier.sent[0]["context"]["step"] == "pre_classification"


def test_monitor_ignores_confident_classifications():
    notifier = RecordingNotifier()
    monitor = LowConfidenceMonitor(notifier, threshold=0.7)

    assert not monitor.observe(_classification(), 0.95)
    assert notifier.sent == []


def test_webhook_posts_payload():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://hooks.example.com/hs", executor=ThreadPoolExecutor(max_workers=1), client=client)

    future = notifier.notify_low_confidence("notify-1", 0.42, {"threshold": 0.7})
    assert future.result(timeout=5) is True
    notifier.shutdown()

    assert len(received) == 1
    body = received[0].read()
    assert b'"classification_id":"notify-1"' in body.replace(b" ", b"")
    assert b"classification.low_confidence" in body


def test_webhook_failure_is_logged_not_raised(caplog):
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    notifier = WebhookNotifier("https://hooks.example.com/hs", executor=ThreadPoolExecutor(max_workers=1), client=client)

    future = notifier.notify_low_confidence("notify-2", 0.1, {})
    assert future.result(timeout=5) is False
    notifier.shutdown()
    assert "Webhook failed" in caplog.text
