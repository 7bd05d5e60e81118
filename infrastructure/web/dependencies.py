# infrastructure/web/dependencies.py
import math
from dataclasses import dataclass, field
from typing import Any, List

from fastapi import HTTPException, Request

from application.orchestrators.delegation_coordinator import DelegationCoordinator
from application.services.progress_relay import ProgressRelay
from domain.errors import CoordinatorError, RateLimitedError
from infrastructure.resilience.circuit_breaker import CircuitBreakerRegistry
from infrastructure.security.webhook_verifier import WebhookVerifier
from infrastructure.storage.session_store import TaskSessionStore


@dataclass
class ServiceComponents:
    """Everything the HTTP layer talks to, built once per application"""
    store: TaskSessionStore
    coordinator: DelegationCoordinator
    relay: ProgressRelay
    issue_verifier: WebhookVerifier
    delegate_verifier: WebhookVerifier
    breakers: CircuitBreakerRegistry
    closeables: List[Any] = field(default_factory=list)


def get_components(request: Request) -> ServiceComponents:
    return request.app.state.components


def get_store(request: Request) -> TaskSessionStore:
    return get_components(request).store


def get_coordinator(request: Request) -> DelegationCoordinator:
    return get_components(request).coordinator


def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return get_components(request).breakers


def http_error_for(error: CoordinatorError) -> HTTPException:
    headers = None
    if isinstance(error, RateLimitedError):
        headers = {"Retry-After": str(max(1, math.ceil(error.retry_after)))}
    return HTTPException(status_code=error.http_status,
                         detail={"error": error.code, "message": error.message},
                         headers=headers)
