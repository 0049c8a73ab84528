"""
Chat session endpoints.
"""
import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from polychat.core.auth_dependency import get_db, get_current_user_obj
from polychat.core.model_rates import format_credits_for_display
from polychat.db.models.user import User
from polychat.schemas.chat import (
    ChatCreateRequest,
    ChatResponse,
    ChatListResponse,
    ChatDetailResponse,
    ChatMessageRequest,
    ChatMessageResponse,
    ChatCompletionRequest,
    ChatCompletionResponse,
    UsageListResponse,
)
from polychat.services import chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["Chats"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ChatResponse)
def create_chat(
    request: ChatCreateRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    return chat_service.create_chat(db, user, request.title)


@router.get("", response_model=ChatListResponse)
def list_chats(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    return ChatListResponse(chats=chat_service.list_chats(db, user))


@router.get("/usage", response_model=UsageListResponse)
def list_usage(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Charged messages, newest first."""
    rows, total = chat_service.list_usage(db, user, page, page_size)
    return UsageListResponse(entries=rows, total=total, page=page, page_size=page_size)


@router.get("/{chat_id}", response_model=ChatDetailResponse)
def get_chat(
    chat_id: int,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    return chat_service.get_chat(db, user, chat_id)


@router.delete("/{chat_id}", response_model=ChatResponse)
def delete_chat(
    chat_id: int,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    return chat_service.soft_delete_chat(db, user, chat_id)


@router.post("/{chat_id}/restore", response_model=ChatResponse)
def restore_chat(
    chat_id: int,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    return chat_service.restore_chat(db, user, chat_id)


@router.post("/{chat_id}/messages", status_code=status.HTTP_201_CREATED, response_model=ChatMessageResponse)
def save_message(
    chat_id: int,
    request: ChatMessageRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    return chat_service.save_user_message(
        db,
        user,
        chat_id,
        request.user_input,
        api_response=request.api_response or "",
        input_type=request.input_type,
        output_type=request.output_type,
        context_id=request.context_id,
    )


@router.post("/{chat_id}/completions", status_code=status.HTTP_201_CREATED, response_model=ChatCompletionResponse)
def record_completion(
    chat_id: int,
    request: ChatCompletionRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Charge for a finished model exchange and store it. 402 when credits run out."""
    message, cost = chat_service.record_completion(
        db,
        user,
        chat_id,
        request.model,
        request.user_input,
        request.api_response,
        prompt_tokens=request.prompt_tokens,
        completion_tokens=request.completion_tokens,
        context_id=request.context_id,
    )
    db.refresh(user)
    return ChatCompletionResponse(
        message=ChatMessageResponse.model_validate(message),
        credits_charged=format_credits_for_display(cost),
        credits_remaining=user.credits_remaining,
    )
