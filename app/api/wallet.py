"""
Wallet endpoints. One wallet per identity, submitted once.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies import ApiServices, get_services, require_session
from app.services.signup import SessionState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet")


class WalletBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: Optional[str] = Field(default=None, max_length=128)
    chain_type: Optional[str] = Field(default=None, alias="chainType", max_length=16)


@router.get("")
async def get_wallet(
    state: SessionState = Depends(require_session),
    services: ApiServices = Depends(get_services),
):
    wallet = await services.wallets.get(state.identity)
    return {"success": True, "wallet": wallet.to_dict()}


@router.post("")
async def submit_wallet(
    body: WalletBody,
    state: SessionState = Depends(require_session),
    services: ApiServices = Depends(get_services),
):
    wallet = await services.wallets.submit(state.identity, body.address, body.chain_type)
    updated = state.with_wallet(wallet.address, wallet.chain_type.value)
    await services.sessions.save(updated.session_id, updated.to_dict())
    return JSONResponse({"success": True, "wallet": wallet.to_dict()}, status_code=201)
