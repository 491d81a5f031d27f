from datetime import datetime
from typing import Optional, List
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, EmailStr


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class ResultFormat(str, Enum):
    TEXT = "text"
    TABLE = "table"
    ERROR = "error"


# =========================
# USER
# =========================
class UserBase(BaseModel):
    email: EmailStr


# No role here: admins are created directly in the database
class CreateUser(UserBase):
    password: str = Field(min_length=8)
    model_config = ConfigDict(from_attributes=True)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(UserBase):
    id: int
    role: UserRole
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# =========================
# MESSAGE
# =========================
class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    user_message: str
    sql_query: Optional[str] = None
    # JSON array of row objects, serialized
    result_data: Optional[str] = None
    result_format: Optional[ResultFormat] = None
    error_message: Optional[str] = None
    execution_time_ms: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# CONVERSATION
# =========================
class ConversationCreate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)


class ConversationUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class BranchCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    branch_point_message_id: int


class ConversationResponse(BaseModel):
    id: int
    user_id: int
    title: Optional[str] = None
    parent_id: Optional[int] = None
    branch_point_message_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationDetailResponse(ConversationResponse):
    messages: List[MessageResponse] = []


class ConversationListResponse(BaseModel):
    conversations: List[ConversationResponse]
    total: int
    limit: int
    offset: int


# =========================
# QUERY
# =========================
class QueryRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    conversation_id: Optional[int] = None


class AnalysisResponse(BaseModel):
    message_id: int
    analysis: str
