"""API authentication: bearer keys mapped to named API clients"""
import logging
import secrets
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from barber_loyalty import config
from barber_loyalty.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_api_clients() -> dict[str, str]:
    """Bearer key -> client name, from config.API_KEYS"""
    try:
        return config.parse_api_keys(config.API_KEYS)
    except ConfigurationError:
        # Already logged by the exception; a broken key list authorizes nobody
        return {}


def match_api_client(api_key: str, clients: dict[str, str]) -> Optional[str]:
    """Client name for the key, compared in constant time"""
    for key, name in clients.items():
        if secrets.compare_digest(api_key.encode(), key.encode()):
            return name
    return None


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security)
) -> str:
    """
    Resolve the API client behind the Authorization header

    Args:
        credentials: HTTP authorization credentials

    Returns:
        Name of the API client; routes record it as authorized_by on
        redemption transitions

    Raises:
        HTTPException: 503 when no keys are configured, 401 for an unknown key
    """
    clients = get_api_clients()

    if not clients:
        logger.error("No API keys configured - rejecting all requests")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API authentication not configured"
        )

    client_name = match_api_client(credentials.credentials, clients)
    if client_name is None:
        logger.warning("Rejected request with an unknown API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )

    logger.debug(f"Authenticated API client {client_name}")
    return client_name
