import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai_feature.service import get_query_pipeline
from app.core import models, schemas
from app.core.database import get_db
from app.core.nl2sql.errors import ConversationNotFound, GenerationError, PersistenceError
from app.core.nl2sql.pipeline import QueryPipeline
from app.core.security import get_current_user

router = APIRouter(prefix="/query", tags=["Query"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
pipeline_dep = Annotated[QueryPipeline, Depends(get_query_pipeline)]


@router.post("", response_model=schemas.MessageResponse)
async def execute_query(
    request: schemas.QueryRequest,
    current_user: user_dep,
    pipeline: pipeline_dep,
    db: db_dep,
):
    """
    Ask a question in natural language.

    Generation, validation and execution problems come back as a normal
    message with result_format "error". Only a storage failure is a 500.
    """
    if not request.query.strip():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Query is required")

    try:
        return await pipeline.run(
            db, current_user, request.query, request.conversation_id
        )
    except ConversationNotFound as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except PersistenceError as error:
        logging.error(f"Failed to record query for user {current_user.id}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to save message"
        )


@router.post(
    "/messages/{message_id}/analysis", response_model=schemas.AnalysisResponse
)
async def analyze_message(
    message_id: int,
    current_user: user_dep,
    pipeline: pipeline_dep,
    db: db_dep,
):
    """Conversational commentary on an answered question (not stored)."""
    try:
        analysis = await pipeline.analyze(db, current_user, message_id)
    except ConversationNotFound as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except ValueError as error:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(error))
    except GenerationError as error:
        logging.error(f"Analysis of message {message_id} failed: {error}")
        raise HTTPException(
            status.HTTP_502_BAD_GATEWAY, f"Failed to generate analysis: {error}"
        )

    return {"message_id": message_id, "analysis": analysis}
