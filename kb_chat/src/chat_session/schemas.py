from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from kb_chat.src.knowledge_base.schemas import KnowledgeBaseRecord
from kb_chat.utils.time_utils import utc_now

ErrorType = Literal["validation", "not_found", "processing", "unexpected"]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class ChatSession(BaseModel):
    token: str
    history: List[ChatMessage] = Field(default_factory=list)
    # snapshot of the record taken when the session was created
    knowledge_base: KnowledgeBaseRecord
    created_at: datetime
    last_activity: datetime


class ChatResult(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    session_id: Optional[str] = None
    error_type: Optional[ErrorType] = None
