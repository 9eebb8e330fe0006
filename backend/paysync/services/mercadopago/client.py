"""Shared HTTP helper for every Mercado Pago API call.

Centralizes bearer authentication, integrator identification headers,
idempotency keys on mutating requests, hard timeouts and error
normalization into ``ProviderAPIError``.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from paysync.core.config import settings
from paysync.core.exceptions import ProviderAPIError
from paysync.core.otel import traced

mercadopago_logger = logging.getLogger("mercadopago")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _build_client(timeout: float) -> httpx.AsyncClient:
    """Create the AsyncClient used for a single request (patched in tests)"""
    return httpx.AsyncClient(base_url=settings.MP_API_BASE_URL, timeout=timeout)


def build_headers(
    access_token: Optional[str],
    method: str,
    idempotency_key: Optional[str] = None,
    extra_headers: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    if settings.MP_INTEGRATOR_ID:
        headers["X-Integrator-Id"] = settings.MP_INTEGRATOR_ID
    if settings.MP_PLATFORM_ID:
        headers["X-Platform-Id"] = settings.MP_PLATFORM_ID
    if method.upper() in MUTATING_METHODS:
        headers["X-Idempotency-Key"] = idempotency_key or str(uuid.uuid4())
    # Caller-provided headers win
    if extra_headers:
        headers.update(extra_headers)
    return headers


def _error_from_response(response: httpx.Response) -> ProviderAPIError:
    try:
        payload = response.json()
    except ValueError:
        payload = {"body": response.text}
    message = None
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error_description") or payload.get("error")
    if not message:
        message = f"MP API error {response.status_code}"
    return ProviderAPIError(response.status_code, str(message), payload=payload)


async def mp_request(
    access_token: Optional[str],
    method: str,
    path: str,
    *,
    json: Optional[Any] = None,
    data: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    extra_headers: Optional[Dict[str, str]] = None,
    idempotency_key: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Any:
    """Perform one request against the provider API and return the decoded JSON body.

    ``timeout`` bounds the whole call (connect, send and read); when it
    elapses the in-flight request is cancelled and ``asyncio.TimeoutError``
    propagates. Non-2xx responses raise ``ProviderAPIError``.
    """
    method = method.upper()
    timeout = timeout if timeout is not None else settings.MP_REQUEST_TIMEOUT
    headers = build_headers(access_token, method, idempotency_key, extra_headers)

    with traced("mercadopago.request", **{"http.method": method, "mercadopago.path": path}):
        async with _build_client(timeout) as client:
            response = await asyncio.wait_for(
                client.request(method, path, headers=headers, json=json, data=data, params=params),
                timeout=timeout,
            )

    if response.status_code >= 400:
        error = _error_from_response(response)
        mercadopago_logger.warning(
            f"MP API error {response.status_code} on {method} {path}: {error.message}"
        )
        raise error

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"body": response.text}
