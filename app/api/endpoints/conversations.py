import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import conversations, models, schemas
from app.core.database import get_db
from app.core.nl2sql.errors import ConversationNotFound, PersistenceError
from app.core.security import get_current_user

router = APIRouter(prefix="/conversations", tags=["Conversations"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]


def _not_found(error: ConversationNotFound) -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, str(error))


def _save_failed(error: PersistenceError) -> HTTPException:
    logging.error(f"Conversation write failed: {error}")
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, str(error))


@router.post(
    "",
    response_model=schemas.ConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    payload: schemas.ConversationCreate, current_user: user_dep, db: db_dep
):
    try:
        return await conversations.create_conversation(current_user.id, payload.title, db)
    except PersistenceError as error:
        raise _save_failed(error)


@router.get("", response_model=schemas.ConversationListResponse)
async def list_conversations(
    current_user: user_dep,
    db: db_dep,
    limit: int = Query(conversations.DEFAULT_PAGE_SIZE, ge=1),
    offset: int = Query(0, ge=0),
):
    """Most recently active first; limit is capped at 100."""
    items, total = await conversations.list_conversations(current_user, db, limit, offset)
    return {
        "conversations": items,
        "total": total,
        "limit": min(limit, conversations.MAX_PAGE_SIZE),
        "offset": offset,
    }


# Declared before /{conversation_id} so "search" is not parsed as an id
@router.get("/search", response_model=schemas.ConversationListResponse)
async def search_conversations(
    current_user: user_dep,
    db: db_dep,
    q: str = Query(..., min_length=1),
    limit: int = Query(conversations.DEFAULT_PAGE_SIZE, ge=1),
    offset: int = Query(0, ge=0),
):
    items, total = await conversations.search_conversations(
        current_user.id, q, db, limit, offset
    )
    return {
        "conversations": items,
        "total": total,
        "limit": min(limit, conversations.MAX_PAGE_SIZE),
        "offset": offset,
    }


@router.get("/{conversation_id}", response_model=schemas.ConversationDetailResponse)
async def get_conversation(conversation_id: int, current_user: user_dep, db: db_dep):
    try:
        return await conversations.get_conversation(conversation_id, current_user, db)
    except ConversationNotFound as error:
        raise _not_found(error)


@router.put("/{conversation_id}", response_model=schemas.ConversationResponse)
async def rename_conversation(
    conversation_id: int,
    payload: schemas.ConversationUpdate,
    current_user: user_dep,
    db: db_dep,
):
    try:
        return await conversations.rename_conversation(
            conversation_id, current_user, payload.title, db
        )
    except ConversationNotFound as error:
        raise _not_found(error)
    except PersistenceError as error:
        raise _save_failed(error)


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: int, current_user: user_dep, db: db_dep):
    try:
        await conversations.delete_conversation(conversation_id, current_user, db)
    except ConversationNotFound as error:
        raise _not_found(error)
    except PersistenceError as error:
        raise _save_failed(error)
    return {"message": "Conversation deleted successfully"}


@router.post(
    "/{conversation_id}/branch",
    response_model=schemas.ConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_branch(
    conversation_id: int,
    payload: schemas.BranchCreate,
    current_user: user_dep,
    db: db_dep,
):
    """Start a new conversation that forks from a message of this one."""
    try:
        return await conversations.create_branch(
            conversation_id,
            payload.branch_point_message_id,
            current_user,
            payload.title,
            db,
        )
    except ConversationNotFound as error:
        raise _not_found(error)
    except PersistenceError as error:
        raise _save_failed(error)
