"""Request-scoped security dependencies"""
import logging
import re
from typing import Optional

from fastapi import Header, HTTPException, Request

security_logger = logging.getLogger("security")

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


def require_tenant(
    request: Request,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> str:
    """Dependency: tenant context for tenant-scoped routes, return tenant_id.

    The tenant header is set by the authenticating gateway in front of
    this service.
    """
    if not x_tenant_id:
        raise HTTPException(401, "Missing tenant context")
    tenant_id = x_tenant_id.strip()
    if not TENANT_ID_PATTERN.match(tenant_id):
        security_logger.warning(
            f"Rejected malformed tenant header - "
            f"IP: {get_client_ip(request)}, Path: {request.url.path}"
        )
        raise HTTPException(400, "Invalid tenant identifier")
    return tenant_id


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip
