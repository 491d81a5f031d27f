"""Wiring for the question-to-SQL flow.

Flow (see app.core.nl2sql.pipeline):
1. Load recent questions of the conversation
2. Build the prompt and generate SQL
3. Sanitize and validate the SQL (read-only gate)
4. Execute it with a timeout and a row cap
5. Store the outcome as a message
"""

from functools import lru_cache

from app.core.config import settings
from app.core.database import engine
from app.core.nl2sql.execute import BoundedExecutor
from app.core.nl2sql.generation import GeminiGenerator
from app.core.nl2sql.pipeline import QueryPipeline


@lru_cache
def get_query_pipeline() -> QueryPipeline:
    """FastAPI dependency: one pipeline per process, shared by all requests."""
    executor = BoundedExecutor(
        engine,
        timeout_seconds=settings.QUERY_TIMEOUT_SECONDS,
        max_rows=settings.MAX_RESULT_ROWS,
    )
    return QueryPipeline(
        generator=GeminiGenerator.from_settings(),
        executor=executor,
        timeout_seconds=settings.QUERY_TIMEOUT_SECONDS,
    )
