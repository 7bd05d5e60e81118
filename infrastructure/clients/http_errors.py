# infrastructure/clients/http_errors.py
from typing import Any

import httpx

from domain.errors import UpstreamError


def upstream_from_transport(service: str, error: httpx.HTTPError) -> UpstreamError:
    """Network failures and timeouts are always worth retrying"""
    return UpstreamError(f"{service} request failed: {error.__class__.__name__}: {error}",
                         transient=True)


def check_response(service: str, response: httpx.Response) -> Any:
    """Return the decoded JSON body or raise an ``UpstreamError``.

    429 and 5xx are transient; any other 4xx is the caller's fault and is not
    retried.
    """
    status = response.status_code
    if status >= 400:
        transient = status == 429 or status >= 500
        raise UpstreamError(f"{service} returned HTTP {status}: {response.text[:200]}",
                            transient=transient, status_code=status)

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        raise UpstreamError(f"{service} returned a non-JSON body", transient=False,
                            status_code=status)
