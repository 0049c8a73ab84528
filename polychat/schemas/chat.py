"""
Pydantic schemas for chat endpoints.
"""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field


class ChatCreateRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200, description="Chat title (defaults to 'New chat')")


class ChatResponse(BaseModel):
    """Schema for a chat session."""
    id: int
    title: str
    summary: Optional[str] = None
    deleted: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChatListResponse(BaseModel):
    chats: list[ChatResponse]


class ChatMessageRequest(BaseModel):
    """Store a message without charging for it."""
    user_input: str = Field(..., min_length=1, description="What the user typed")
    api_response: Optional[str] = Field("", description="Model answer, if already known")
    input_type: str = Field("Text", description="Text, Image, ...")
    output_type: str = Field("Text", description="Text, Image, ...")
    context_id: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    """A finished model exchange to be charged."""
    model: str = Field(..., description="ChatGPT, Claude, Gemini or DeepSeek")
    user_input: str = Field(..., min_length=1)
    api_response: str = Field("", description="Model answer")
    prompt_tokens: Optional[int] = Field(None, ge=0, description="Estimated from the text when omitted")
    completion_tokens: Optional[int] = Field(None, ge=0, description="Estimated from the text when omitted")
    context_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "model": "ChatGPT",
                "user_input": "Summarise this article",
                "api_response": "The article argues...",
                "prompt_tokens": 1200,
                "completion_tokens": 300
            }
        }


class ChatMessageResponse(BaseModel):
    """Schema for a single chat history entry."""
    id: int
    chat_id: int
    user_input: Optional[str] = None
    api_response: Optional[str] = None
    model_name: Optional[str] = None
    input_type: str
    output_type: str
    context_id: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    credits_deducted: str = Field("0", description="Exact credits charged")
    timestamp: datetime

    class Config:
        from_attributes = True


class ChatDetailResponse(ChatResponse):
    messages: list[ChatMessageResponse] = Field(default_factory=list)


class ChatCompletionResponse(BaseModel):
    message: ChatMessageResponse
    credits_charged: str = Field(..., description="Credits charged, rounded up to 2 decimals")
    credits_remaining: str


class UsageListResponse(BaseModel):
    """Schema for usage list response."""
    entries: list[ChatMessageResponse]
    total: int
    page: int = 1
    page_size: int = 20
