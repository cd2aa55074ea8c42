import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from keygate.config import settings
from keygate.core import ExpirySweeper, KeyGateError, KeyService, KeyValidationError

logger = logging.getLogger(__name__)


async def verify_api_token(
    authorization: Annotated[str | None, Header()] = None
) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(parts[1], settings.api_token):
        logger.warning("Rejected request with invalid API token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return parts[1]


def get_key_service(request: Request) -> KeyService:
    return request.app.state.key_service


def get_sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper


TokenDep = Annotated[str, Depends(verify_api_token)]
ServiceDep = Annotated[KeyService, Depends(get_key_service)]
SweeperDep = Annotated[ExpirySweeper, Depends(get_sweeper)]


def service_error(e: KeyGateError) -> HTTPException:
    """
    Map a raised service error to an HTTP error.

    Anything other than invalid input is transient: the outcome is unknown
    and the caller may retry.
    """
    if isinstance(e, KeyValidationError):
        return HTTPException(
            status_code=422,
            detail=str(e),
        )

    logger.warning("Key service unavailable: %s", e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Key store temporarily unavailable, retry later",
        headers={"Retry-After": "1"},
    )
