from pydantic import BaseModel, Field
from typing import Optional, Literal
from uuid import UUID

class OfferCreate(BaseModel):
    message: Optional[str] = Field(default=None, max_length=1000)

class RequestCreate(BaseModel):
    lawyer_id: UUID
    message: Optional[str] = Field(default=None, max_length=1000)

class ProposalRespond(BaseModel):
    action: str

class CaseStatusChange(BaseModel):
    status: str
    comment: Optional[str] = None


class ConnectionCreate(BaseModel):
    lawyer_id: UUID
    message: str
    connection_type: Literal["general_consultation", "specific_case", "ongoing_support"] = "general_consultation"


class ConnectionRespond(BaseModel):
    action: str
    response_message: Optional[str] = None


class TypingUpdate(BaseModel):
    typing: bool = False
