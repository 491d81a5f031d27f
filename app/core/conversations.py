import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core import models
from app.core.nl2sql.errors import (
    ConversationAccessDenied,
    ConversationNotFound,
    PersistenceError,
)
from app.core.schemas import UserRole


# -----------------------------------------------------------------------------
# CONVERSATIONS MODULE
# Purpose: read and write conversations, branches and messages.
# Why: the query pipeline needs history and a place to record every outcome;
# the HTTP layer needs the usual list/get/rename/delete operations.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
HISTORY_LIMIT = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _page(limit: int, offset: int) -> Tuple[int, int]:
    limit = DEFAULT_PAGE_SIZE if limit <= 0 else min(limit, MAX_PAGE_SIZE)
    return limit, max(offset, 0)


# =========================
# Authorization
# =========================
def user_can_access(
    conversation: models.Conversation, user: models.User, write: bool = False
) -> bool:
    """
    Single ownership check used by every conversation operation.

    Owners can read and write. Admins can read anyone's conversation but
    never write to it.
    """
    if conversation.user_id == user.id:
        return True
    if write:
        return False
    return user.role == UserRole.ADMIN.value


async def _get_authorized(
    conversation_id: int,
    user: models.User,
    db: AsyncSession,
    write: bool = False,
    with_messages: bool = False,
) -> models.Conversation:
    query = select(models.Conversation).where(
        models.Conversation.id == conversation_id
    )
    if with_messages:
        query = query.options(selectinload(models.Conversation.messages))

    result = await db.execute(query)
    conversation = result.scalars().first()

    if conversation is None:
        raise ConversationNotFound("conversation not found")
    if not user_can_access(conversation, user, write=write):
        raise ConversationAccessDenied("conversation not found")
    return conversation


async def _commit(db: AsyncSession, what: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as error:
        await db.rollback()
        logging.error(f"Failed to {what}: {error}")
        raise PersistenceError(f"failed to {what}") from error


# =========================
# Conversations
# =========================
async def create_conversation(
    user_id: int, title: Optional[str], db: AsyncSession
) -> models.Conversation:
    conversation = models.Conversation(user_id=user_id, title=title)
    db.add(conversation)
    await _commit(db, "create conversation")
    await db.refresh(conversation)
    return conversation


def start_conversation(
    user_id: int, title: Optional[str], db: AsyncSession
) -> models.Conversation:
    """
    Add a conversation without committing it.

    It is written by the same commit as its first message, so a question
    whose outcome cannot be stored leaves no empty conversation behind.
    """
    conversation = models.Conversation(user_id=user_id, title=title)
    db.add(conversation)
    return conversation


async def list_conversations(
    user: models.User, db: AsyncSession, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
) -> Tuple[List[models.Conversation], int]:
    """
    Page through conversations, most recently active first.

    Admins see every user's conversations, everyone else only their own.

    Returns:
        (conversations, total)
    """
    limit, offset = _page(limit, offset)

    filters = []
    if user.role != UserRole.ADMIN.value:
        filters.append(models.Conversation.user_id == user.id)

    total_query = select(func.count(models.Conversation.id)).where(*filters)
    total = (await db.execute(total_query)).scalar() or 0

    query = (
        select(models.Conversation)
        .where(*filters)
        .order_by(desc(models.Conversation.updated_at), desc(models.Conversation.id))
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total


async def search_conversations(
    user_id: int,
    keyword: str,
    db: AsyncSession,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> Tuple[List[models.Conversation], int]:
    """Case-insensitive title search over the user's own conversations."""
    limit, offset = _page(limit, offset)
    pattern = f"%{keyword.strip()}%"

    filters = [
        models.Conversation.user_id == user_id,
        models.Conversation.title.ilike(pattern),
    ]

    total_query = select(func.count(models.Conversation.id)).where(*filters)
    total = (await db.execute(total_query)).scalar() or 0

    query = (
        select(models.Conversation)
        .where(*filters)
        .order_by(desc(models.Conversation.updated_at), desc(models.Conversation.id))
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total


async def get_conversation(
    conversation_id: int, user: models.User, db: AsyncSession
) -> models.Conversation:
    """Conversation with its messages, oldest message first."""
    return await _get_authorized(conversation_id, user, db, with_messages=True)


async def get_writable_conversation(
    conversation_id: int, user: models.User, db: AsyncSession
) -> models.Conversation:
    return await _get_authorized(conversation_id, user, db, write=True)


async def rename_conversation(
    conversation_id: int, user: models.User, title: str, db: AsyncSession
) -> models.Conversation:
    conversation = await _get_authorized(conversation_id, user, db, write=True)
    conversation.title = title
    conversation.updated_at = _now()
    await _commit(db, "update conversation")
    await db.refresh(conversation)
    return conversation


async def delete_conversation(
    conversation_id: int, user: models.User, db: AsyncSession
) -> None:
    """Delete a conversation; its messages go with it, branches are detached."""
    conversation = await _get_authorized(conversation_id, user, db, write=True)
    await db.delete(conversation)
    await _commit(db, "delete conversation")


async def create_branch(
    parent_id: int,
    branch_point_message_id: int,
    user: models.User,
    title: Optional[str],
    db: AsyncSession,
) -> models.Conversation:
    """
    Fork a new, empty conversation off `parent_id` at a given message.

    Only the parent's existence and ownership are checked. The branch
    point id is stored as given, it is not checked against the parent's
    messages.
    """
    await _get_authorized(parent_id, user, db, write=True)

    branch = models.Conversation(
        user_id=user.id,
        title=title,
        parent_id=parent_id,
        branch_point_message_id=branch_point_message_id,
    )
    db.add(branch)
    await _commit(db, "create branch")
    await db.refresh(branch)
    return branch


# =========================
# Messages
# =========================
async def load_history(
    conversation_id: int,
    db: AsyncSession,
    limit: int = HISTORY_LIMIT,
    before_message_id: Optional[int] = None,
) -> List[str]:
    """
    Most recent `limit` questions of a conversation, oldest first.

    With `before_message_id`, only questions asked before that message count.

    Example:
        ["top merchants in Q1", "only in Almaty"]
    """
    filters = [models.Message.conversation_id == conversation_id]
    if before_message_id is not None:
        filters.append(models.Message.id < before_message_id)

    query = (
        select(models.Message.user_message)
        .where(*filters)
        .order_by(desc(models.Message.created_at), desc(models.Message.id))
        .limit(limit)
    )

    result = await db.execute(query)
    newest_first = list(result.scalars().all())
    return list(reversed(newest_first))


async def append_message(
    conversation: models.Conversation,
    db: AsyncSession,
    user_message: str,
    result_format: str,
    sql_query: Optional[str] = None,
    result_data: Optional[str] = None,
    error_message: Optional[str] = None,
    execution_time_ms: Optional[int] = None,
) -> models.Message:
    """
    Record one terminal outcome of a question.

    Raises:
        ValueError: both a payload and an error were given
        PersistenceError: the datastore could not record the message
    """
    if result_data is not None and error_message is not None:
        raise ValueError("a message cannot carry both result data and an error")

    try:
        if conversation.id is None:
            # started by start_conversation, not written yet
            await db.flush()

        message = models.Message(
            conversation_id=conversation.id,
            user_message=user_message,
            sql_query=sql_query,
            result_data=result_data,
            result_format=result_format,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
        )
        db.add(message)
        conversation.updated_at = _now()
        await db.commit()
        await db.refresh(message)
    except SQLAlchemyError as error:
        await db.rollback()
        logging.error(f"Failed to save message: {error}")
        raise PersistenceError(f"failed to save message: {error}") from error

    return message


async def get_message(
    message_id: int, user: models.User, db: AsyncSession
) -> models.Message:
    """Message by id, authorised through its conversation."""
    query = (
        select(models.Message)
        .options(selectinload(models.Message.conversation))
        .where(models.Message.id == message_id)
    )
    result = await db.execute(query)
    message = result.scalars().first()

    if message is None:
        raise ConversationNotFound("message not found")
    if not user_can_access(message.conversation, user):
        raise ConversationAccessDenied("message not found")
    return message
