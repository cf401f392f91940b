# routes.py
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import AliasChoices, BaseModel, Field

from bridge import VerificationStateBridge

logger = logging.getLogger(__name__)
router = APIRouter(tags=["verification"])


class VerifyRequest(BaseModel):
    # Older clients post {userAddress} to /verify.
    wallet_address: str = Field(validation_alias=AliasChoices("walletAddress", "userAddress"))
    signature: str
    message: str


class VerifyResponse(BaseModel):
    message: str
    transactionHash: str
    anonymousId: str
    verified: bool = True


class StatusResponse(BaseModel):
    address: str
    isVerified: bool
    anonymousId: Optional[str] = None
    timestamp: Optional[str] = None


class RevokeRequest(BaseModel):
    user_address: str = Field(validation_alias=AliasChoices("userAddress", "walletAddress"))
    signature: Optional[str] = None
    message: Optional[str] = None


class RevokeResponse(BaseModel):
    message: str
    transactionHash: str


def get_bridge(request: Request) -> VerificationStateBridge:
    return request.app.state.bridge


def is_admin(request: Request, x_admin_key: Optional[str] = Header(default=None)) -> bool:
    expected = getattr(request.app.state, "admin_api_key", "")
    if not expected or not x_admin_key:
        return False
    return secrets.compare_digest(expected, x_admin_key)


@router.post("/verify", response_model=VerifyResponse)
async def verify(body: VerifyRequest, bridge: VerificationStateBridge = Depends(get_bridge)):
    result = await bridge.verify(body.wallet_address, body.signature, body.message)
    return VerifyResponse(
        message="User verified successfully",
        transactionHash=result.tx_hash,
        anonymousId=result.pseudonym_id,
    )


@router.get("/verify/{address}", response_model=StatusResponse, response_model_exclude_none=True)
async def verification_status(address: str, bridge: VerificationStateBridge = Depends(get_bridge)):
    result = await bridge.status(address)
    return StatusResponse(
        address=address,
        isVerified=result.verified,
        anonymousId=result.pseudonym_id,
        timestamp=result.timestamp.isoformat() if result.timestamp else None,
    )


@router.post("/revoke", response_model=RevokeResponse)
async def revoke(
    body: RevokeRequest,
    bridge: VerificationStateBridge = Depends(get_bridge),
    admin: bool = Depends(is_admin),
):
    if admin:
        logger.info("Admin revoke requested for %s", body.user_address)
    result = await bridge.revoke(body.user_address, body.signature, body.message, admin=admin)
    return RevokeResponse(message="Verification revoked successfully", transactionHash=result.tx_hash)
