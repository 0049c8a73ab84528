"""
Chat sessions and their message history.

Messages are priced with the per-model rate table and paid for through the
credit ledger; a message is only recorded once its credits are deducted.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session

from polychat.core import config
from polychat.core.exceptions import (
    InsufficientCreditsError,
    NotFoundError,
    ValidationFailedError,
)
from polychat.core.model_rates import (
    calculate_message_credits,
    estimate_tokens,
    is_supported_model,
    format_credits_for_display,
)
from polychat.db.models.chat import Chat, ChatHistory
from polychat.db.models.user import User
from polychat.services import credit_ledger
from polychat.services.subscription_service import get_current_subscriptions, lock_user

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200


def create_chat(db: Session, user: User, title: Optional[str] = None) -> Chat:
    title = (title or "").strip() or "New chat"
    chat = Chat(user_id=user.id, title=title[:MAX_TITLE_LENGTH])
    db.add(chat)
    db.commit()
    db.refresh(chat)
    logger.info(f"Chat created: user_id={user.id}, chat_id={chat.id}")
    return chat


def list_chats(db: Session, user: User, include_deleted: bool = False) -> List[Chat]:
    """The user's chats, newest first."""
    query = db.query(Chat).filter(Chat.user_id == user.id)
    if not include_deleted:
        query = query.filter(Chat.deleted.is_(False))
    return query.order_by(desc(Chat.created_at), desc(Chat.id)).all()


def get_chat(db: Session, user: User, chat_id: int, include_deleted: bool = False) -> Chat:
    """Owner-scoped lookup; another user's chat is reported as not found."""
    chat = db.query(Chat).filter(Chat.id == chat_id, Chat.user_id == user.id).first()
    if not chat or (chat.deleted and not include_deleted):
        raise NotFoundError("Chat not found")
    return chat


def soft_delete_chat(db: Session, user: User, chat_id: int) -> Chat:
    chat = get_chat(db, user, chat_id)
    chat.deleted = True
    db.commit()
    db.refresh(chat)
    logger.info(f"Chat deleted: user_id={user.id}, chat_id={chat.id}")
    return chat


def restore_chat(db: Session, user: User, chat_id: int) -> Chat:
    chat = get_chat(db, user, chat_id, include_deleted=True)
    chat.deleted = False
    db.commit()
    db.refresh(chat)
    logger.info(f"Chat restored: user_id={user.id}, chat_id={chat.id}")
    return chat


def ensure_can_chat(user: User) -> None:
    """Refuse new messages once the balance drops below the chat minimum."""
    balance = credit_ledger.get_balance(user)
    minimum = Decimal(config.MIN_CREDITS_TO_CHAT)
    if balance < minimum:
        raise InsufficientCreditsError(
            "Not enough credits to send a message",
            extra={
                "required": credit_ledger.to_credit_string(minimum),
                "remaining": credit_ledger.to_credit_string(balance),
            },
        )


def save_user_message(
    db: Session,
    user: User,
    chat_id: int,
    user_input: str,
    api_response: str = "",
    input_type: str = "Text",
    output_type: str = "Text",
    context_id: Optional[str] = None,
) -> ChatHistory:
    """Store a message without charging for it."""
    if not user_input or not user_input.strip():
        raise ValidationFailedError("Message is missing required fields: user_input")

    chat = get_chat(db, user, chat_id)
    ensure_can_chat(user)

    message = ChatHistory(
        chat_id=chat.id,
        user_input=user_input,
        api_response=api_response or "",
        input_type=input_type,
        output_type=output_type,
        context_id=context_id or "",
        credits_deducted="0",
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def record_completion(
    db: Session,
    user: User,
    chat_id: int,
    model: str,
    user_input: str,
    api_response: str,
    prompt_tokens: Optional[int] = None,
    completion_tokens: Optional[int] = None,
    context_id: Optional[str] = None,
) -> Tuple[ChatHistory, Decimal]:
    """
    Charge for one model exchange and append it to the chat history.

    Token counts default to a character-based estimate. When the balance does
    not cover the cost nothing is written.

    Returns:
        (history row, credits charged)
    """
    if not is_supported_model(model):
        raise ValidationFailedError(f"Unsupported model: {model}")
    if not user_input or not user_input.strip():
        raise ValidationFailedError("Message is missing required fields: user_input")

    if prompt_tokens is None:
        prompt_tokens = estimate_tokens(user_input)
    if completion_tokens is None:
        completion_tokens = estimate_tokens(api_response)
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValidationFailedError("Token counts must be non-negative")

    chat = get_chat(db, user, chat_id)
    cost = calculate_message_credits(model, prompt_tokens, completion_tokens)

    try:
        user = lock_user(db, user.id)
        ensure_can_chat(user)
        current = get_current_subscriptions(db, user.id)
        credit_ledger.deduct(
            db,
            user,
            cost,
            subscription=current[0] if current else None,
            description=f"Chat usage: {model} ({prompt_tokens} prompt + {completion_tokens} completion tokens)",
            payment_method="Usage",
        )
        message = ChatHistory(
            chat_id=chat.id,
            user_input=user_input,
            api_response=api_response or "",
            model_name=model,
            context_id=context_id or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            credits_deducted=credit_ledger.to_credit_string(cost),
        )
        db.add(message)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(message)
    logger.info(
        f"Chat completion recorded: user_id={user.id}, chat_id={chat.id}, model={model}, "
        f"credits={format_credits_for_display(cost)}, balance={user.credits_remaining}"
    )
    return message, cost


def list_usage(db: Session, user: User, page: int = 1, page_size: int = 20) -> Tuple[List[ChatHistory], int]:
    """Charged messages across the user's chats, newest first."""
    query = db.query(ChatHistory).join(Chat, Chat.id == ChatHistory.chat_id).filter(
        Chat.user_id == user.id,
        ChatHistory.model_name.isnot(None),
    )
    total = query.count()
    offset = (page - 1) * page_size
    rows = query.order_by(desc(ChatHistory.timestamp), desc(ChatHistory.id)).offset(offset).limit(page_size).all()
    return rows, total
