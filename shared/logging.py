# shared/logging.py
import structlog
import logging
import sys
from typing import Any, Dict, Optional

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Get logger instance
logger = structlog.get_logger()

# Configure standard library logging
logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=logging.INFO,
)

def setup_logging(level: str = "INFO", json_logs: bool = True):
    """Setup logging configuration"""
    log_level = getattr(logging, level.upper())
    logging.getLogger().setLevel(log_level)

    if not json_logs:
        # Use human-readable format for development
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.dev.ConsoleRenderer()
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

def log_security_event(
    event_type: str,
    severity: str,
    source: str,
    reason: str,
    additional_context: Optional[Dict[str, Any]] = None
):
    """Log a rejected or suspicious webhook delivery"""
    extra_data = {
        "security_event": event_type,
        "severity": severity,
        "source": source,
        "reason": reason
    }

    if additional_context:
        extra_data.update(additional_context)

    if severity in ("high", "critical"):
        logger.error("Security event", **extra_data)
    else:
        logger.warning("Security event", **extra_data)

def log_delegation_decision(
    issue_id: str,
    should_delegate: bool,
    strategy: str,
    complexity_score: int,
    reason: str,
    confidence: Optional[float] = None
):
    """Log the outcome of a delegation decision"""
    extra_data = {
        "issue_id": issue_id,
        "should_delegate": should_delegate,
        "strategy": strategy,
        "complexity_score": complexity_score,
        "reason": reason
    }

    if confidence is not None:
        extra_data["confidence"] = confidence

    logger.info("Delegation decision", **extra_data)

def log_session_transition(
    session_id: str,
    issue_id: str,
    from_status: str,
    to_status: str,
    progress: int,
    delegate_task_id: Optional[str] = None
):
    """Log task session lifecycle transitions"""
    logger.info("Session transition",
               session_id=session_id,
               issue_id=issue_id,
               from_status=from_status,
               to_status=to_status,
               progress=progress,
               delegate_task_id=delegate_task_id)

def log_relay_delivery(
    issue_id: str,
    notification: str,
    attempts: int,
    delivered: bool,
    error_message: Optional[str] = None
):
    """Log outbound status update delivery to the issue tracker"""
    extra_data = {
        "issue_id": issue_id,
        "notification": notification,
        "attempts": attempts,
        "delivered": delivered
    }

    if error_message:
        extra_data["error_message"] = error_message
        logger.error("Relay delivery failed", **extra_data)
    else:
        logger.info("Relay delivery completed", **extra_data)

def log_circuit_breaker_event(
    breaker_name: str,
    event_type: str,
    state: str,
    failure_count: int,
    additional_context: Optional[Dict[str, Any]] = None
):
    """Log circuit breaker state changes"""
    extra_data = {
        "breaker_name": breaker_name,
        "event_type": event_type,
        "circuit_state": state,
        "failure_count": failure_count
    }

    if additional_context:
        extra_data.update(additional_context)

    logger.info("Circuit breaker event", **extra_data)
