"""
Transaction endpoints: local/outgoing submission, inbound bank-to-bank
transfers, and the key distribution endpoint.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from .deps import get_system
from .schemas import (
    B2BTransferRequest, B2BTransferResponse, JWKSResponse,
    TransferRequest, TransferResponse,
)
from ..errors import TokenMalformed
from ..system import BankingSystem


router = APIRouter()


@router.post("", status_code=201, response_model=TransferResponse, response_model_by_alias=True)
def create_transaction(
    request: TransferRequest,
    system: BankingSystem = Depends(get_system)
):
    """Send money to a local or remote account"""
    record = system.coordinator.submit_transfer(
        account_from=request.account_from,
        account_to=request.account_to,
        amount=request.amount,
        currency=request.currency,
        explanation=request.explanation,
        sender_name=request.sender_name
    )
    return TransferResponse.from_record(record)


@router.post("/b2b", response_model=B2BTransferResponse, response_model_by_alias=True)
def receive_b2b_transaction(
    request: B2BTransferRequest,
    system: BankingSystem = Depends(get_system)
):
    """Accept a signed transfer from a counterpart bank"""
    token = request.token or request.jwt
    if not token:
        raise TokenMalformed("token is required")

    record = system.coordinator.accept_transfer(token)
    return B2BTransferResponse(
        receiver_name=record.receiver_name,
        transfer_id=record.transfer_id,
        status=record.status.value
    )


@router.get("/jwks", response_model=JWKSResponse)
def get_jwks(system: BankingSystem = Depends(get_system)):
    """JSON Web Key Set with every key valid for verification"""
    return system.keystore.jwks()


@router.get("/account/{account_number}", response_model=List[TransferResponse], response_model_by_alias=True)
def get_account_transactions(
    account_number: str,
    system: BankingSystem = Depends(get_system)
):
    """Transfers where the account is sender or receiver, newest first"""
    records = system.coordinator.list_account_transfers(account_number)
    return [TransferResponse.from_record(record) for record in records]


@router.get("/{transfer_id}", response_model=TransferResponse, response_model_by_alias=True)
def get_transaction(
    transfer_id: str,
    system: BankingSystem = Depends(get_system)
):
    record = system.coordinator.get_transfer(transfer_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransferResponse.from_record(record)
