# infrastructure/security/webhook_verifier.py
import hashlib
import hmac
import json
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import ValidationError as SchemaError

from domain.errors import (
    AuthenticationError,
    CoordinatorError,
    PayloadTooLargeError,
    RateLimitedError,
    ValidationError,
)
from infrastructure.security.delivery_ledger import DeliveryLedger
from infrastructure.security.rate_limiter import RejectionTracker, SlidingWindowRateLimiter
from shared.logging import logger, log_security_event

SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class WebhookRequest:
    """Raw inbound delivery as received from the transport"""
    body: bytes
    source: str
    signature: Optional[str] = None
    content_length: Optional[int] = None
    delivery_id: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class VerifiedWebhook:
    """An authenticated delivery narrowed to its typed event"""
    event: Any
    delivery_id: str
    source: str


def compute_signature(secret: str, body: bytes, timestamp: Optional[str] = None) -> str:
    """HMAC-SHA256 over the body, or over ``<timestamp>.<body>`` for timestamped deliveries"""
    message = body if timestamp is None else timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def body_fingerprint(body: bytes) -> str:
    return "sha256:" + hashlib.sha256(body).hexdigest()


class WebhookVerifier:
    """Gatekeeper for one webhook endpoint.

    Checks run in a fixed order and stop at the first failure: payload size,
    rate limits, signature, schema. A timestamp header, when sent, is part of
    the signed material and must fall inside the tolerance window. Every check is
    in-memory and never suspends. ``process`` then runs the handler at most
    once per delivery identifier.
    """

    def __init__(self,
                 name: str,
                 parser: Callable[[Dict[str, Any]], Any],
                 secret: Optional[str],
                 rate_limiter: SlidingWindowRateLimiter,
                 ledger: DeliveryLedger,
                 rejections: RejectionTracker,
                 max_payload_bytes: int = 1024 * 1024,
                 signature_tolerance_seconds: int = 300,
                 critical_failure_threshold: int = 5,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.parser = parser
        self.secret = secret
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.rejections = rejections
        self.max_payload_bytes = max_payload_bytes
        self.signature_tolerance_seconds = signature_tolerance_seconds
        self.critical_failure_threshold = critical_failure_threshold
        self._clock = clock
        self.counters: Counter = Counter()
        self._warned_unsigned = False

    def verify(self, request: WebhookRequest) -> VerifiedWebhook:
        self.check_size(request)
        self._check_rate(request)
        self._check_signature(request)
        event = self._parse(request)

        delivery_id = request.delivery_id or body_fingerprint(request.body)
        return VerifiedWebhook(event=event, delivery_id=delivery_id, source=request.source)

    async def process(self, request: WebhookRequest,
                      handler: Callable[[VerifiedWebhook], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Verify then run ``handler`` once per delivery; returns ``(outcome, replayed)``"""
        verified = self.verify(request)
        outcome, replayed = await self.ledger.run_once(
            verified.delivery_id, lambda: handler(verified))
        self.counters["duplicates" if replayed else "accepted"] += 1
        return outcome, replayed

    def stats(self) -> Dict[str, int]:
        return dict(self.counters)

    # Checks

    def check_size(self, request: WebhookRequest):
        """Reject when the declared length or the bytes read so far exceed the limit"""
        declared = request.content_length or 0
        actual = len(request.body)
        if declared > self.max_payload_bytes or actual > self.max_payload_bytes:
            self._reject("payload_too_large", "medium", request,
                         PayloadTooLargeError(
                             f"Payload of {max(declared, actual)} bytes exceeds "
                             f"limit of {self.max_payload_bytes}"),
                         {"payload_bytes": max(declared, actual)})

    def _check_rate(self, request: WebhookRequest):
        try:
            self.rate_limiter.check(request.source)
        except RateLimitedError as e:
            self._reject("rate_limited", "medium", request, e,
                         {"scope": e.scope, "retry_after": round(e.retry_after, 3)})

    def _check_signature(self, request: WebhookRequest):
        if request.timestamp is not None:
            self._check_timestamp(request)

        if not self.secret:
            if not self._warned_unsigned:
                logger.warning("No webhook secret configured, skipping signature verification",
                               endpoint=self.name)
                self._warned_unsigned = True
            return

        if not request.signature:
            self._reject("missing_signature", "high", request,
                         AuthenticationError("Missing webhook signature"))

        provided = request.signature.strip()
        if provided.startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]
        expected = compute_signature(self.secret, request.body, request.timestamp)

        if not hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8")):
            self._reject("invalid_signature", "high", request,
                         AuthenticationError("Invalid webhook signature"))

    def _check_timestamp(self, request: WebhookRequest):
        try:
            sent_at = float(request.timestamp)
        except (TypeError, ValueError):
            self._reject("invalid_timestamp", "high", request,
                         AuthenticationError("Malformed webhook timestamp"))

        skew = abs(self._clock() - sent_at)
        if skew > self.signature_tolerance_seconds:
            self._reject("stale_timestamp", "high", request,
                         AuthenticationError("Webhook timestamp outside tolerance"),
                         {"skew_seconds": round(skew, 1)})

    def _parse(self, request: WebhookRequest) -> Any:
        try:
            payload = json.loads(request.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._reject("malformed_payload", "low", request,
                         ValidationError(f"Payload is not valid JSON: {e}"))

        try:
            return self.parser(payload)
        except SchemaError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
                for err in e.errors()[:5])
            self._reject("schema_violation", "low", request,
                         ValidationError(f"Payload failed validation: {problems}"),
                         {"error_count": e.error_count()})

    def _reject(self, event_type: str, severity: str, request: WebhookRequest,
                error: CoordinatorError, context: Optional[Dict[str, Any]] = None):
        failures = self.rejections.record(request.source)
        if failures >= self.critical_failure_threshold:
            severity = "critical"

        self.counters[f"rejected_{event_type}"] += 1
        details = {"endpoint": self.name, "failures_in_window": failures,
                   "delivery_id": request.delivery_id}
        if context:
            details.update(context)
        log_security_event(event_type, severity, request.source, error.message, details)
        raise error
