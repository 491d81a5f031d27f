import asyncio
import logging
import time
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import conversations, models
from app.core.nl2sql import prompts
from app.core.nl2sql.errors import GenerationError, PersistenceError
from app.core.nl2sql.execute import BoundedExecutor, ExecutionResult
from app.core.nl2sql.generation import TextGenerator
from app.core.nl2sql.results import Failed, Ok, StageResult
from app.core.nl2sql.sanitize import sanitize_response
from app.core.nl2sql.validate import READ_ONLY_REJECTION, find_violations
from app.core.schemas import ResultFormat


# -----------------------------------------------------------------------------
# PIPELINE MODULE - Orchestration
# Purpose: answer one question end to end:
#   history → prompt → generation → sanitize → validate → execute → persist
# Why: every outcome, good or bad, must end up as a stored message. Only a
# failure to store that message is raised to the caller.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

TITLE_LENGTH = 60


class QueryStage(Enum):
    """Where a question is in the pipeline."""

    RECEIVED = "received"
    HISTORY_LOADED = "history_loaded"
    SQL_GENERATED = "sql_generated"
    VALIDATED = "validated"
    EXECUTED = "executed"
    PERSISTED = "persisted"
    ERROR_RECORDED = "error_recorded"


class Deadline:
    """Joint time budget shared by every suspending step of one question."""

    def __init__(self, seconds: float):
        self.started = time.monotonic()
        self.expires = self.started + seconds

    def remaining(self) -> float:
        return max(self.expires - time.monotonic(), 0.0)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class QueryPipeline:
    """
    Turns a natural-language question into a persisted Message.

    Args:
        generator: Text-generation backend
        executor: Bounded executor for the store being queried
        timeout_seconds: Joint budget for history read, generation and execution
    """

    def __init__(
        self,
        generator: TextGenerator,
        executor: BoundedExecutor,
        timeout_seconds: float,
    ):
        self.generator = generator
        self.executor = executor
        self.timeout_seconds = timeout_seconds

    # =========================
    # Stages
    # =========================
    async def _load_history(
        self, conversation_id: int, db: AsyncSession, deadline: Deadline
    ) -> List[str]:
        try:
            return await asyncio.wait_for(
                conversations.load_history(conversation_id, db, prompts.SQL_HISTORY_LIMIT),
                timeout=deadline.remaining(),
            )
        except asyncio.TimeoutError as error:
            raise PersistenceError("timed out reading conversation history") from error
        except SQLAlchemyError as error:
            raise PersistenceError(f"failed to read conversation history: {error}") from error

    async def generate_sql(
        self, question: str, history: List[str], deadline: Deadline
    ) -> StageResult[str]:
        """SQL_GENERATED stage: build the prompt and ask the backend."""
        prompt = prompts.build_sql_prompt(question, history)
        try:
            raw = await asyncio.wait_for(
                self.generator.generate(prompt), timeout=deadline.remaining()
            )
        except asyncio.TimeoutError:
            return Failed("Failed to generate SQL: generation timed out")
        except GenerationError as error:
            return Failed(f"Failed to generate SQL: {error}", error)
        return Ok(raw)

    @staticmethod
    def validate_sql(raw: str) -> StageResult[str]:
        """VALIDATED stage: sanitize, then apply the read-only gate."""
        statement = sanitize_response(raw)
        violations = find_violations(statement)
        if violations:
            logger.warning(f"Rejected generated statement ({', '.join(violations)})")
            return Failed(READ_ONLY_REJECTION)
        return Ok(statement)

    async def execute_sql(
        self, statement: str, deadline: Deadline
    ) -> StageResult[ExecutionResult]:
        """EXECUTED stage: run under whatever is left of the budget."""
        outcome = await self.executor.run(statement, timeout=deadline.remaining())
        if isinstance(outcome, Failed):
            return Failed(f"Query execution failed: {outcome.reason}", outcome.error)
        return outcome

    # =========================
    # Orchestration
    # =========================
    async def _resolve_conversation(
        self,
        user: models.User,
        question: str,
        conversation_id: Optional[int],
        db: AsyncSession,
    ) -> models.Conversation:
        if conversation_id:
            return await conversations.get_writable_conversation(conversation_id, user, db)
        # No thread given: start one, titled after the question; it is stored
        # together with the first message
        return conversations.start_conversation(
            user.id, question.strip()[:TITLE_LENGTH], db
        )

    async def _record_error(
        self,
        conversation: models.Conversation,
        question: str,
        failed: Failed,
        stage: QueryStage,
        deadline: Deadline,
        db: AsyncSession,
        sql_query: Optional[str] = None,
    ) -> models.Message:
        """ERROR_RECORDED terminal: the failure becomes a normal message."""
        message = await conversations.append_message(
            conversation,
            db,
            user_message=question,
            result_format=ResultFormat.ERROR.value,
            sql_query=sql_query,
            error_message=failed.reason,
            execution_time_ms=deadline.elapsed_ms(),
        )
        logger.info(
            f"[User {conversation.user_id}] {QueryStage.ERROR_RECORDED.value} "
            f"after {stage.value}: message {message.id}"
        )
        return message

    async def run(
        self,
        db: AsyncSession,
        user: models.User,
        question: str,
        conversation_id: Optional[int] = None,
    ) -> models.Message:
        """
        Answer one question and return the stored Message.

        Args:
            db: Session used for history and persistence
            user: Authenticated user asking the question
            question: Natural-language question
            conversation_id: Existing conversation, or None to start one

        Returns:
            The persisted Message (result_format text / table / error)

        Raises:
            ConversationNotFound: conversation missing or not writable by user
            PersistenceError: the outcome could not be stored
        """
        deadline = Deadline(self.timeout_seconds)
        stage = QueryStage.RECEIVED

        conversation = await self._resolve_conversation(user, question, conversation_id, db)

        history: List[str] = []
        if conversation_id:
            history = await self._load_history(conversation.id, db, deadline)
        stage = QueryStage.HISTORY_LOADED

        generated = await self.generate_sql(question, history, deadline)
        if isinstance(generated, Failed):
            logger.error(f"[User {user.id}] generation failed: {generated.reason}")
            return await self._record_error(
                conversation, question, generated, stage, deadline, db
            )
        stage = QueryStage.SQL_GENERATED

        validated = self.validate_sql(generated.value)
        if isinstance(validated, Failed):
            logger.warning(f"[User {user.id}] validation rejected the generated SQL")
            return await self._record_error(
                conversation, question, validated, stage, deadline, db
            )
        statement = validated.value
        stage = QueryStage.VALIDATED

        executed = await self.execute_sql(statement, deadline)
        if isinstance(executed, Failed):
            logger.error(f"[User {user.id}] execution failed: {executed.reason}")
            return await self._record_error(
                conversation, question, executed, stage, deadline, db, sql_query=statement
            )
        result = executed.value
        stage = QueryStage.EXECUTED

        message = await conversations.append_message(
            conversation,
            db,
            user_message=question,
            result_format=result.result_format,
            sql_query=statement,
            result_data=result.payload,
            execution_time_ms=deadline.elapsed_ms(),
        )
        stage = QueryStage.PERSISTED

        logger.info(
            f"[User {user.id}] {stage.value}: message {message.id}, "
            f"{result.row_count} rows, {result.result_format}, "
            f"{message.execution_time_ms} ms"
        )
        return message

    async def analyze(
        self, db: AsyncSession, user: models.User, message_id: int
    ) -> str:
        """
        Free-form commentary on an answered question.

        The text is returned to the caller only; it is neither validated nor
        executed nor stored.

        Raises:
            ConversationNotFound: message missing or not visible to user
            ValueError: the message holds an error, nothing to analyze
            GenerationError: the backend failed or timed out
        """
        message = await conversations.get_message(message_id, user, db)
        if message.result_format == ResultFormat.ERROR.value or not message.sql_query:
            raise ValueError("cannot analyze a failed query")

        history = await conversations.load_history(
            message.conversation_id,
            db,
            prompts.ANALYSIS_HISTORY_LIMIT,
            before_message_id=message.id,
        )

        prompt = prompts.build_analysis_prompt(
            message.user_message,
            message.sql_query,
            message.result_data,
            message.result_format,
            history,
        )
        try:
            return await asyncio.wait_for(
                self.generator.generate(prompt), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as error:
            raise GenerationError("analysis generation timed out") from error
