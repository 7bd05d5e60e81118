# tests/unit/infrastructure/security/test_webhook_verifier.py
import json
from unittest.mock import patch

import pytest

from domain.errors import (
    AuthenticationError,
    PayloadTooLargeError,
    RateLimitedError,
    ValidationError,
)
from domain.models.webhook_events import TaskProgressCallback, parse_delegate_callback
from infrastructure.security.delivery_ledger import DeliveryLedger
from infrastructure.security.rate_limiter import RejectionTracker, SlidingWindowRateLimiter
from infrastructure.security.webhook_verifier import (
    WebhookRequest,
    WebhookVerifier,
    body_fingerprint,
    compute_signature,
)

SECRET = "whsec-test"
NOW = 1_700_000_000.0


def make_verifier(secret=SECRET, per_source=100, max_payload_bytes=1024,
                  critical_failure_threshold=5):
    return WebhookVerifier(
        name="delegate",
        parser=parse_delegate_callback,
        secret=secret,
        rate_limiter=SlidingWindowRateLimiter(per_source, 1000, 60),
        ledger=DeliveryLedger(3600),
        rejections=RejectionTracker(60),
        max_payload_bytes=max_payload_bytes,
        signature_tolerance_seconds=300,
        critical_failure_threshold=critical_failure_threshold,
        clock=lambda: NOW,
    )


def signed(payload, secret=SECRET, **kwargs):
    body = json.dumps(payload).encode("utf-8")
    kwargs.setdefault("source", "10.0.0.1")
    signature = compute_signature(secret, body, kwargs.get("timestamp"))
    return WebhookRequest(body=body, signature="sha256=" + signature, **kwargs)


PROGRESS = {"type": "task.progress", "taskId": "task-1", "progress": 40, "step": "tests"}


class TestWebhookVerifier:

    def test_valid_delivery(self):
        verified = make_verifier().verify(signed(PROGRESS, delivery_id="d-1"))

        assert isinstance(verified.event, TaskProgressCallback)
        assert verified.event.progress == 40
        assert verified.delivery_id == "d-1"
        assert verified.source == "10.0.0.1"

    def test_signature_without_prefix_accepted(self):
        body = json.dumps(PROGRESS).encode("utf-8")
        request = WebhookRequest(body=body, source="10.0.0.1",
                                 signature=compute_signature(SECRET, body).upper())

        assert make_verifier().verify(request).event.task_id == "task-1"

    def test_delivery_id_defaults_to_body_fingerprint(self):
        request = signed(PROGRESS)

        assert make_verifier().verify(request).delivery_id == body_fingerprint(request.body)

    def test_missing_signature(self):
        request = WebhookRequest(body=json.dumps(PROGRESS).encode("utf-8"), source="10.0.0.1")

        with patch("infrastructure.security.webhook_verifier.log_security_event") as log:
            with pytest.raises(AuthenticationError):
                make_verifier().verify(request)

        event_type, severity, source = log.call_args.args[:3]
        assert (event_type, severity, source) == ("missing_signature", "high", "10.0.0.1")

    def test_wrong_secret_rejected(self):
        with pytest.raises(AuthenticationError):
            make_verifier().verify(signed(PROGRESS, secret="other-secret"))

    def test_tampered_body_rejected(self):
        request = signed(PROGRESS)
        tampered = WebhookRequest(body=request.body.replace(b"40", b"99"),
                                  source=request.source, signature=request.signature)

        with pytest.raises(AuthenticationError):
            make_verifier().verify(tampered)

    def test_unsigned_mode_skips_signature(self):
        verifier = make_verifier(secret=None)
        request = WebhookRequest(body=json.dumps(PROGRESS).encode("utf-8"), source="10.0.0.1")

        assert verifier.verify(request).event.progress == 40

    def test_oversized_payload_rejected_before_signature(self):
        verifier = make_verifier(max_payload_bytes=10)
        request = WebhookRequest(body=b"x" * 50, source="10.0.0.1")

        with pytest.raises(PayloadTooLargeError):
            verifier.verify(request)
        assert verifier.stats() == {"rejected_payload_too_large": 1}

    def test_declared_length_checked(self):
        request = signed(PROGRESS, content_length=10_000)

        with pytest.raises(PayloadTooLargeError):
            make_verifier().verify(request)

    def test_rate_limit(self):
        verifier = make_verifier(per_source=1)
        verifier.verify(signed(PROGRESS))

        with pytest.raises(RateLimitedError) as exc_info:
            verifier.verify(signed(PROGRESS))

        assert exc_info.value.scope == "source"

    @pytest.mark.parametrize("timestamp,expected", [
        ("yesterday", "invalid_timestamp"),
        (str(NOW - 301), "stale_timestamp"),
        (str(NOW + 301), "stale_timestamp"),
    ])
    def test_timestamp_checked_when_present(self, timestamp, expected):
        verifier = make_verifier()

        with pytest.raises(AuthenticationError):
            verifier.verify(signed(PROGRESS, timestamp=timestamp))

        assert verifier.stats() == {f"rejected_{expected}": 1}

    def test_fresh_timestamp_accepted(self):
        assert make_verifier().verify(signed(PROGRESS, timestamp=str(NOW - 30))).event

    def test_timestamp_is_covered_by_signature(self):
        body = json.dumps(PROGRESS).encode("utf-8")
        request = WebhookRequest(body=body, source="10.0.0.1", timestamp=str(NOW - 30),
                                 signature="sha256=" + compute_signature(SECRET, body))

        with pytest.raises(AuthenticationError):
            make_verifier().verify(request)

    def test_dropping_timestamp_breaks_signature(self):
        request = signed(PROGRESS, timestamp=str(NOW - 30))
        stripped = WebhookRequest(body=request.body, source=request.source,
                                  signature=request.signature)
        verifier = make_verifier()

        with pytest.raises(AuthenticationError):
            verifier.verify(stripped)
        assert verifier.stats() == {"rejected_invalid_signature": 1}

    def test_signature_message_format(self):
        body = b'{"a": 1}'

        assert compute_signature(SECRET, body, "1700000000") == compute_signature(
            SECRET, b'1700000000.{"a": 1}')

    def test_malformed_json(self):
        body = b"{not json"
        request = WebhookRequest(body=body, source="10.0.0.1",
                                 signature=compute_signature(SECRET, body))

        with pytest.raises(ValidationError):
            make_verifier().verify(request)

    def test_schema_violation_names_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            make_verifier().verify(signed({"type": "task.progress", "taskId": "t", "progress": 140}))

        assert "progress" in exc_info.value.message

    def test_repeated_failures_escalate_to_critical(self):
        verifier = make_verifier(critical_failure_threshold=3)

        with patch("infrastructure.security.webhook_verifier.log_security_event") as log:
            for _ in range(3):
                with pytest.raises(AuthenticationError):
                    verifier.verify(signed(PROGRESS, secret="wrong"))

        severities = [c.args[1] for c in log.call_args_list]
        assert severities == ["high", "high", "critical"]
        assert log.call_args.args[4]["failures_in_window"] == 3

    @pytest.mark.asyncio
    async def test_process_runs_handler_once_per_delivery(self):
        verifier = make_verifier()
        handled = []

        async def handler(verified):
            handled.append(verified.event.task_id)
            return {"status": "running"}

        first = await verifier.process(signed(PROGRESS, delivery_id="d-1"), handler)
        second = await verifier.process(signed(PROGRESS, delivery_id="d-1"), handler)

        assert first == ({"status": "running"}, False)
        assert second == ({"status": "running"}, True)
        assert handled == ["task-1"]
        assert verifier.stats() == {"accepted": 1, "duplicates": 1}

    @pytest.mark.asyncio
    async def test_rejected_delivery_never_reaches_handler(self):
        verifier = make_verifier()
        handled = []

        async def handler(verified):
            handled.append(verified)

        with pytest.raises(AuthenticationError):
            await verifier.process(signed(PROGRESS, secret="wrong"), handler)

        assert handled == []
