"""Mercado Pago OAuth flow: authorize URL, code exchange, refresh and user info"""
import logging
import secrets
from typing import Any, Dict
from urllib.parse import urlencode

from paysync.core.config import settings, MP_AUTHORIZE_URL
from paysync.services.mercadopago.client import mp_request

mercadopago_logger = logging.getLogger("mercadopago")


def generate_oauth_state() -> str:
    """32 random bytes, hex encoded"""
    return secrets.token_hex(32)


def get_authorize_url(state: str) -> str:
    params = {
        "client_id": settings.MP_CLIENT_ID,
        "response_type": "code",
        "platform_id": "mp",
        "redirect_uri": settings.MP_REDIRECT_URI,
        "state": state,
    }
    return f"{MP_AUTHORIZE_URL}?{urlencode(params)}"


async def exchange_code_for_token(code: str) -> Dict[str, Any]:
    """Exchange an authorization code for access/refresh tokens.

    Returns the provider payload: access_token, refresh_token, expires_in,
    user_id, public_key, scope.
    """
    mercadopago_logger.info("Exchanging OAuth authorization code")
    return await mp_request(
        None,
        "POST",
        "/oauth/token",
        data={
            "client_id": settings.MP_CLIENT_ID,
            "client_secret": settings.MP_CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.MP_REDIRECT_URI,
        },
    )


async def refresh_access_token(refresh_token: str) -> Dict[str, Any]:
    """Trade a refresh token for a new token pair"""
    return await mp_request(
        None,
        "POST",
        "/oauth/token",
        data={
            "client_id": settings.MP_CLIENT_ID,
            "client_secret": settings.MP_CLIENT_SECRET,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        },
        timeout=settings.MP_REQUEST_TIMEOUT,
    )


async def get_user_info(access_token: str) -> Dict[str, Any]:
    """Fetch the connected account (id, email, nickname)"""
    return await mp_request(access_token, "GET", "/users/me")
