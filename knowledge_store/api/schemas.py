"""
Request and response models for the HTTP surface.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

VALID_ROLES = ['user', 'assistant', 'system', 'tool']


class AccountUpsertRequest(BaseModel):
    name: str
    source: str
    external_id: str

    @field_validator('name', 'source', 'external_id')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v


class ChannelUpsertRequest(BaseModel):
    external_id: str
    kind: str
    name: Optional[str] = None

    @field_validator('external_id', 'kind')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v


class MessageRequest(BaseModel):
    channel_id: int
    account_id: int
    role: str
    content: str
    reply_to_id: Optional[int] = None

    @field_validator('role')
    @classmethod
    def role_must_be_valid(cls, v):
        if v not in VALID_ROLES:
            raise ValueError(f'role must be one of: {VALID_ROLES}')
        return v


class DocumentRequest(BaseModel):
    content: Any


class IdResponse(BaseModel):
    id: int


class MessageResponse(BaseModel):
    id: int
    channel_id: int
    account_id: int
    role: str
    content: str
    reply_to_id: Optional[int]
    created_at: datetime


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]


class DocumentResponse(BaseModel):
    doc_id: str
    content: Any


class SearchRequest(BaseModel):
    query: str
    k: Optional[int] = Field(default=None, ge=1, le=100)


class DocumentHit(BaseModel):
    distance: float
    doc_id: str
    content: Any


class MessageHit(BaseModel):
    distance: float
    message: MessageResponse


class DocumentSearchResponse(BaseModel):
    results: List[DocumentHit]


class MessageSearchResponse(BaseModel):
    results: List[MessageHit]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    documents: int
    messages: int
