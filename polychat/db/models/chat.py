"""
Chat session and message history models.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from polychat.db.base import Base


class Chat(Base):
    """
    Chat session owned by a user.

    Deletion only flips the `deleted` flag so a chat can be restored.
    """
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String, nullable=False, default="New chat")
    summary = Column(Text, nullable=True)
    deleted = Column(Boolean, nullable=False, default=False, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    messages = relationship("ChatHistory", back_populates="chat", order_by="ChatHistory.id")

    __table_args__ = (
        Index("idx_chat_user_deleted", "user_id", "deleted"),
    )

    def __repr__(self):
        return f"<Chat(id={self.id}, title='{self.title}', deleted={self.deleted})>"


class ChatHistory(Base):
    """Append-only message record, with the tokens and credits it consumed."""
    __tablename__ = "chat_history"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)

    user_input = Column(Text, nullable=True)
    api_response = Column(Text, nullable=True)
    model_name = Column(String, nullable=True)
    input_type = Column(String, nullable=False, default="Text")
    output_type = Column(String, nullable=False, default="Text")
    context_id = Column(String, nullable=True)

    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    credits_deducted = Column(String, nullable=False, default="0")

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    chat = relationship("Chat", back_populates="messages")

    def __repr__(self):
        return f"<ChatHistory(id={self.id}, chat_id={self.chat_id}, credits='{self.credits_deducted}')>"
