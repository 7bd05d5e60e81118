# main.py
import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, FastAPI

from application.orchestrators.delegation_coordinator import DelegationCoordinator
from application.services.decision_engine import DecisionEngine, DelegationPolicy
from application.services.progress_relay import ProgressRelay
from application.services.task_classifier import ComplexityBands, TaskClassifier
from application.services.task_spec_builder import TaskSpecBuilder
from domain.models.webhook_events import parse_delegate_callback, parse_issue_envelope
from infrastructure.clients.execution_delegate import (
    CodegenExecutionDelegate,
    DryRunExecutionDelegate,
    ExecutionDelegate,
)
from infrastructure.clients.issue_tracker import DryRunIssueTracker, IssueTracker, LinearIssueTracker
from infrastructure.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from infrastructure.resilience.retry import RetryPolicy
from infrastructure.security.delivery_ledger import DeliveryLedger
from infrastructure.security.rate_limiter import RejectionTracker, SlidingWindowRateLimiter
from infrastructure.security.webhook_verifier import WebhookVerifier
from infrastructure.storage.postgres_session_persistence import PostgresSessionPersistence
from infrastructure.storage.session_store import SessionPersistence, TaskSessionStore
from infrastructure.web.dependencies import ServiceComponents, get_breakers, get_components
from infrastructure.web.session_api import router as session_router
from infrastructure.web.webhook_api import router as webhook_router
from shared.config import CoordinatorSettings
from shared.logging import logger, setup_logging

VERSION = "1.0.0"


def build_components(settings: CoordinatorSettings,
                     tracker: Optional[IssueTracker] = None,
                     delegate: Optional[ExecutionDelegate] = None,
                     persistence: Optional[SessionPersistence] = None,
                     retry_policy: Optional[RetryPolicy] = None) -> ServiceComponents:
    """Wire the coordinator from settings; collaborators may be supplied directly"""
    breakers = CircuitBreakerRegistry()
    closeables = []

    if tracker is None:
        if settings.linear_api_key:
            tracker = LinearIssueTracker(
                settings.linear_api_key,
                settings.linear_api_url,
                breaker=breakers.get_breaker("issue_tracker",
                                             CircuitBreakerConfig(failure_threshold=5,
                                                                  timeout_seconds=15.0)))
        else:
            logger.warning("LINEAR_API_KEY not set, issue tracker running in dry-run mode")
            tracker = DryRunIssueTracker()
        closeables.append(tracker)

    if delegate is None:
        if settings.codegen_api_token and settings.codegen_org_id:
            delegate = CodegenExecutionDelegate(
                settings.codegen_api_token,
                settings.codegen_org_id,
                settings.codegen_api_url,
                breaker=breakers.get_breaker("execution_delegate",
                                             CircuitBreakerConfig(failure_threshold=3,
                                                                  timeout_seconds=30.0)))
        else:
            logger.warning("Codegen credentials not set, execution delegate running in dry-run mode")
            delegate = DryRunExecutionDelegate()
        closeables.append(delegate)

    store = TaskSessionStore(persistence)
    relay = ProgressRelay(
        store,
        tracker,
        retry_policy=retry_policy or RetryPolicy(
            max_attempts=settings.relay_max_attempts,
            base_delay=settings.relay_base_delay_seconds,
            max_delay=settings.relay_max_delay_seconds),
        completed_state_id=settings.completed_state_id,
        failed_state_id=settings.failed_state_id,
    )
    coordinator = DelegationCoordinator(
        store=store,
        classifier=TaskClassifier(ComplexityBands(settings.complexity_simple_below,
                                                  settings.complexity_complex_above)),
        engine=DecisionEngine(DelegationPolicy(threshold=settings.delegation_threshold,
                                               max_concurrency=settings.max_concurrent_sessions)),
        spec_builder=TaskSpecBuilder(settings.delegate_callback_url),
        delegate=delegate,
        tracker=tracker,
        relay=relay,
    )

    rate_limiter = SlidingWindowRateLimiter(settings.rate_limit_per_source,
                                            settings.rate_limit_global,
                                            settings.rate_limit_window_seconds)
    rejections = RejectionTracker(settings.rate_limit_window_seconds)

    def verifier(name, parser, secret):
        return WebhookVerifier(
            name=name,
            parser=parser,
            secret=secret,
            rate_limiter=rate_limiter,
            ledger=DeliveryLedger(settings.delivery_retention_seconds),
            rejections=rejections,
            max_payload_bytes=settings.max_webhook_payload_bytes,
            signature_tolerance_seconds=settings.signature_tolerance_seconds,
            critical_failure_threshold=settings.critical_failure_threshold,
        )

    return ServiceComponents(
        store=store,
        coordinator=coordinator,
        relay=relay,
        issue_verifier=verifier("issues", parse_issue_envelope, settings.issue_webhook_secret),
        delegate_verifier=verifier("delegate", parse_delegate_callback,
                                   settings.delegate_webhook_secret),
        breakers=breakers,
        closeables=closeables,
    )


async def run_maintenance(components: ServiceComponents, settings: CoordinatorSettings):
    """Session sweep plus ledger and rate-limiter housekeeping"""
    removed = await components.store.sweep(timedelta(hours=settings.session_retention_hours))
    pruned = 0
    for verifier in (components.issue_verifier, components.delegate_verifier):
        pruned += verifier.ledger.prune()
    components.issue_verifier.rate_limiter.prune()
    components.issue_verifier.rejections.prune()
    logger.info("Maintenance completed", sessions_removed=removed, deliveries_pruned=pruned)


async def maintenance_loop(components: ServiceComponents, settings: CoordinatorSettings):
    while True:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            await run_maintenance(components, settings)
        except Exception as e:
            logger.error("Maintenance run failed", error=str(e))


def create_app(settings: Optional[CoordinatorSettings] = None,
               components: Optional[ServiceComponents] = None) -> FastAPI:
    settings = settings or CoordinatorSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle"""
        setup_logging(level=settings.log_level, json_logs=settings.json_logs)
        logger.info("Starting delegation coordinator", version=VERSION)

        persistence = None
        try:
            if app.state.components is None:
                if settings.database_url:
                    persistence = PostgresSessionPersistence(settings.database_url)
                    await persistence.initialize()
                app.state.components = build_components(settings, persistence=persistence)

            await app.state.components.store.initialize()
            logger.info("Application initialized successfully",
                        persistent=app.state.components.store.persistence is not None)
        except Exception as e:
            logger.error("Failed to initialize application", error=str(e))
            raise

        maintenance = asyncio.create_task(maintenance_loop(app.state.components, settings))

        yield

        logger.info("Shutting down delegation coordinator")
        maintenance.cancel()
        try:
            await maintenance
        except asyncio.CancelledError:
            pass

        try:
            await asyncio.wait_for(app.state.components.relay.drain(), timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Pending notifications dropped at shutdown",
                           pending=app.state.components.relay.pending_deliveries())

        for closeable in app.state.components.closeables:
            await closeable.close()
        if persistence is not None:
            await persistence.close()

    app = FastAPI(
        title="Delegation Coordinator",
        description="Routes tracker issues to an execution delegate and relays progress back",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.components = components
    app.state.settings = settings

    app.include_router(webhook_router)
    app.include_router(session_router)

    @app.get("/health")
    async def health_check(
        components: ServiceComponents = Depends(get_components),
        breakers: CircuitBreakerRegistry = Depends(get_breakers)
    ):
        """System health check"""
        circuit_status = breakers.get_all_status()
        open_circuits = breakers.open_circuits()

        return {
            "status": "healthy" if not open_circuits else "degraded",
            "persistence": "postgres" if components.store.persistence is not None else "memory",
            "active_sessions": components.store.active_count(),
            "circuit_breakers": circuit_status,
            "open_circuits": open_circuits,
            "version": VERSION,
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "service": "Delegation Coordinator",
            "version": VERSION,
            "endpoints": {
                "issue_webhook": "POST /webhooks/issues",
                "delegate_webhook": "POST /webhooks/delegate",
                "sessions": "GET /sessions",
                "active_sessions": "GET /sessions/active",
                "cancel": "DELETE /sessions/{session_id}",
                "health": "GET /health",
                "stats": "GET /stats"
            }
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = CoordinatorSettings.from_env()

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=os.getenv("RELOAD", "false").lower() == "true"
    )
