"""
Pydantic schemas for API requests and responses
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..transfers import TransferRecord


class TransferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_from: str = Field(..., alias="accountFrom", description="Sender account number")
    account_to: str = Field(..., alias="accountTo", description="Receiver account number")
    amount: Any = Field(..., description="Amount as number or decimal string")
    currency: Optional[str] = Field(None, description="ISO-4217 code, defaults to the sender account currency")
    explanation: str = ""
    sender_name: Optional[str] = Field(None, alias="senderName")


class B2BTransferRequest(BaseModel):
    """Inbound transfer from a counterpart bank; `jwt` is the legacy field name"""
    token: Optional[str] = None
    jwt: Optional[str] = None


class B2BTransferResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    receiver_name: str = Field(..., alias="receiverName")
    transfer_id: str = Field(..., alias="transferId")
    status: str


class JWKModel(BaseModel):
    kty: str
    kid: str
    use: str
    alg: str
    n: str
    e: str


class JWKSResponse(BaseModel):
    keys: List[JWKModel]


class TransferResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transfer_id: str = Field(..., alias="transferId")
    account_from: str = Field(..., alias="accountFrom")
    account_to: str = Field(..., alias="accountTo")
    amount: str
    currency: str
    explanation: str
    sender_name: str = Field(..., alias="senderName")
    receiver_name: Optional[str] = Field(None, alias="receiverName")
    status: str
    direction: str
    error_code: Optional[str] = Field(None, alias="errorCode")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    @classmethod
    def from_record(cls, record: TransferRecord) -> 'TransferResponse':
        return cls(
            transfer_id=record.transfer_id,
            account_from=record.account_from,
            account_to=record.account_to,
            amount=str(record.amount),
            currency=record.currency,
            explanation=record.explanation,
            sender_name=record.sender_name,
            receiver_name=record.receiver_name,
            status=record.status.value,
            direction=record.direction.value,
            error_code=record.error_code,
            created_at=record.created_at.isoformat(),
            updated_at=record.updated_at.isoformat(),
        )
