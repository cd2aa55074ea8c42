import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from keygate.config import settings
from keygate.core import KeyFilter, KeyGateError, RevokeOutcome
from .dependencies import ServiceDep, TokenDep, service_error

logger = logging.getLogger(__name__)
router = APIRouter()


class IssueRequest(BaseModel):
    creator_id: str
    creator_name: str
    creator_handle: str
    duration: str = Field(description="Duration class, e.g. short, day, week, month, permanent")
    notes: Optional[str] = Field(default=None, max_length=1000)


class KeyResponse(BaseModel):
    identifier: str
    creator_id: str
    creator_name: str
    creator_handle: str
    created_at: str
    expires_at: str
    duration_label: str
    notes: Optional[str] = None
    consumed: bool
    redeemer_name: Optional[str] = None
    redeemer_external_id: Optional[str] = None
    consumed_at: Optional[str] = None


class KeyStatusResponse(KeyResponse):
    state: str
    checked_at: str


class KeyListResponse(BaseModel):
    keys: List[KeyResponse]
    count: int


class VerifyRequest(BaseModel):
    # Game clients send numeric player ids
    model_config = ConfigDict(coerce_numbers_to_str=True)

    identifier: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("identifier", "key"),
    )
    redeemer_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("redeemer_name", "robloxName"),
    )
    redeemer_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("redeemer_id", "robloxId"),
    )


class VerifyResponse(BaseModel):
    granted: bool
    reason: str
    message: str
    data: Optional[dict] = None


class RevokeResponse(BaseModel):
    success: bool
    identifier: str
    outcome: str


_REVOKE_ERRORS = {
    RevokeOutcome.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Key {} not found"),
    RevokeOutcome.NOT_OWNED: (status.HTTP_403_FORBIDDEN, "Key {} does not belong to you"),
    RevokeOutcome.ALREADY_CONSUMED: (status.HTTP_409_CONFLICT, "Key {} has already been used"),
}


@router.post("", response_model=KeyResponse, status_code=status.HTTP_201_CREATED)
async def issue_key(body: IssueRequest, service: ServiceDep, token: TokenDep):
    try:
        key = await service.issue(
            creator_id=body.creator_id,
            creator_name=body.creator_name,
            creator_handle=body.creator_handle,
            duration_class=body.duration,
            notes=body.notes,
        )
    except KeyGateError as e:
        raise service_error(e)

    return KeyResponse(**key.to_dict())


@router.post("/verify", response_model=VerifyResponse)
async def verify_key(body: VerifyRequest, service: ServiceDep, token: TokenDep):
    try:
        result = await service.verify_and_consume(
            body.identifier,
            body.redeemer_name,
            body.redeemer_id,
        )
    except KeyGateError as e:
        raise service_error(e)

    return VerifyResponse(
        granted=result.granted,
        reason=result.reason.value,
        message=result.message,
        data=result.metadata or None,
    )


@router.get("", response_model=KeyListResponse)
async def list_keys(
    service: ServiceDep,
    token: TokenDep,
    filter: str = "all",
    limit: Optional[int] = None,
):
    try:
        key_filter = KeyFilter.parse(filter)
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown filter: {filter}",
        )

    if limit is None:
        limit = settings.list_default_limit

    try:
        keys = await service.list_all(key_filter, limit)
    except KeyGateError as e:
        raise service_error(e)

    return KeyListResponse(
        keys=[KeyResponse(**key.to_dict()) for key in keys],
        count=len(keys),
    )


@router.get("/by-creator/{creator_id}", response_model=KeyListResponse)
async def list_creator_keys(creator_id: str, service: ServiceDep, token: TokenDep):
    try:
        keys = await service.list_mine(creator_id)
    except KeyGateError as e:
        raise service_error(e)

    return KeyListResponse(
        keys=[KeyResponse(**key.to_dict()) for key in keys],
        count=len(keys),
    )


@router.get("/{identifier}", response_model=KeyStatusResponse)
async def get_key_status(identifier: str, service: ServiceDep, token: TokenDep):
    try:
        view = await service.check_status(identifier)
    except KeyGateError as e:
        raise service_error(e)

    if view is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Key {identifier} not found",
        )

    return KeyStatusResponse(**view.to_dict())


@router.delete("/{identifier}", response_model=RevokeResponse)
async def revoke_key(
    identifier: str,
    requester_id: str,
    service: ServiceDep,
    token: TokenDep,
):
    try:
        outcome = await service.revoke(identifier, requester_id)
    except KeyGateError as e:
        raise service_error(e)

    if outcome in _REVOKE_ERRORS:
        status_code, detail = _REVOKE_ERRORS[outcome]
        raise HTTPException(status_code=status_code, detail=detail.format(identifier))

    return RevokeResponse(success=True, identifier=identifier, outcome=outcome.value)
