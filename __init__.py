"""
Delegation Coordinator - Issue Tracker to Execution Delegate Bridge

Receives issue tracker webhooks, decides whether each issue is worth handing
to an external autonomous coding agent, and follows the delegated task to
completion while reporting progress back on the issue.

Features:
- Signed, rate-limited and idempotent webhook intake
- Keyword-based task classification and threshold delegation policy
- Task session store with a per-session lifecycle state machine
- Best-effort progress relay with exponential backoff
- Circuit breakers around outbound tracker and delegate calls
- Optional PostgreSQL session persistence
"""

__version__ = "1.0.0"
__author__ = "Delegation Coordinator Team"
