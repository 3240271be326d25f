"""
services/conversation/router.py
Traveler ↔ guide messaging. A conversation exists once a reservation is
accepted; only its participants can read or post.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import STAFF_ROLES, get_current_user
from shared.models.models import Conversation, Message, User
from shared.schemas.schemas import (
    ChatMessageCreateRequest,
    ChatMessageResponse,
    ConversationResponse,
)
from shared.utils.dates import as_utc, utcnow

router = APIRouter(prefix="/api/conversations", tags=["Conversations"])


async def _get_conversation_for(
    conversation_id: UUID, user: User, db: AsyncSession, allow_staff: bool = True
) -> Conversation:
    conversation = await db.scalar(select(Conversation).where(Conversation.id == conversation_id))
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if str(user.id) not in conversation.participant_ids and not (
        allow_staff and user.role in STAFF_ROLES
    ):
        raise HTTPException(status_code=403, detail="You are not part of this conversation")
    return conversation


@router.get("/user/{user_id}", response_model=List[ConversationResponse])
async def list_user_conversations(
    user_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Most recently active first."""
    if current_user.id != user_id and current_user.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Not authorized to view these conversations")

    result = await db.execute(select(Conversation))
    mine = [c for c in result.scalars() if str(user_id) in (c.participant_ids or [])]
    mine.sort(key=lambda c: as_utc(c.last_message_at or c.created_at), reverse=True)
    return [ConversationResponse.model_validate(c) for c in mine]


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversation = await _get_conversation_for(conversation_id, current_user, db)
    return ConversationResponse.model_validate(conversation)


@router.get("/{conversation_id}/messages", response_model=List[ChatMessageResponse])
async def list_messages(
    conversation_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Oldest first."""
    await _get_conversation_for(conversation_id, current_user, db)
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
        .limit(limit)
    )
    return [ChatMessageResponse.model_validate(m) for m in result.scalars()]


@router.post(
    "/{conversation_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: UUID,
    data: ChatMessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversation = await _get_conversation_for(
        conversation_id, current_user, db, allow_staff=False
    )
    text = data.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    message = Message(conversation_id=conversation.id, sender_id=current_user.id, text=text)
    db.add(message)
    conversation.last_message_at = utcnow()
    await db.commit()
    return ChatMessageResponse.model_validate(message)
