import asyncio
import json

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.ai_feature.service import get_query_pipeline
from app.core import models
from app.core.nl2sql.errors import GenerationError, PersistenceError
from app.core.nl2sql.execute import BoundedExecutor
from app.core.nl2sql.generation import TextGenerator
from app.core.nl2sql.pipeline import QueryPipeline
from app.main import app
from app.core.nl2sql.validate import READ_ONLY_REJECTION

TOP_MERCHANTS_SQL = (
    "```sql\n"
    "SELECT merch_name, SUM(trx_amount_usd) AS total\n"
    "FROM transactions\n"
    "GROUP BY merch_name\n"
    "ORDER BY total DESC\n"
    "LIMIT 5\n"
    "```"
)


async def _ask(client, headers, query, conversation_id=None):
    payload = {"query": query}
    if conversation_id is not None:
        payload["conversation_id"] = conversation_id
    return await client.post("/query", json=payload, headers=headers)


# =========================
# Successful questions
# =========================
@pytest.mark.asyncio
async def test_top_merchants_returns_table(
    client: AsyncClient, auth_headers_user, generator, sample_transactions
):
    """A fenced answer is cleaned, executed and stored as a table"""
    generator.push(TOP_MERCHANTS_SQL)

    response = await _ask(client, auth_headers_user, "Top 5 merchants by amount")

    assert response.status_code == 200
    data = response.json()
    assert data["result_format"] == "table"
    assert data["error_message"] is None
    assert data["sql_query"].startswith("SELECT merch_name")
    assert "```" not in data["sql_query"]
    assert data["execution_time_ms"] >= 0

    rows = json.loads(data["result_data"])
    assert len(rows) == 5
    assert rows[0]["merch_name"] == "Technodom"


@pytest.mark.asyncio
async def test_single_value_returns_text(
    client: AsyncClient, auth_headers_user, generator, sample_transactions
):
    generator.push("SELECT COUNT(*) AS cnt FROM transactions")

    response = await _ask(client, auth_headers_user, "How many transactions?")

    data = response.json()
    assert data["result_format"] == "text"
    assert json.loads(data["result_data"]) == [{"cnt": 7}]


@pytest.mark.asyncio
async def test_double_quoted_literal_is_fixed(
    client: AsyncClient, auth_headers_user, generator, sample_transactions
):
    generator.push('SELECT COUNT(*) AS cnt FROM transactions WHERE location_city = "Almaty"')

    response = await _ask(client, auth_headers_user, "Transactions in Almaty")

    data = response.json()
    assert data["sql_query"].endswith("location_city = 'Almaty'")
    assert json.loads(data["result_data"]) == [{"cnt": 4}]


@pytest.mark.asyncio
async def test_zero_rows_is_empty_text(
    client: AsyncClient, auth_headers_user, generator, sample_transactions
):
    generator.push("SELECT * FROM transactions WHERE location_city = 'Nowhere'")

    response = await _ask(client, auth_headers_user, "Anything in Nowhere?")

    data = response.json()
    assert data["result_format"] == "text"
    assert data["result_data"] is None
    assert data["error_message"] is None


@pytest.mark.asyncio
async def test_new_conversation_is_titled_after_question(
    client: AsyncClient, auth_headers_user, generator, db_session, test_user
):
    generator.push("SELECT 1 AS one")
    question = "What was the total amount of POS transactions in Almaty " * 3

    response = await _ask(client, auth_headers_user, question)

    conversation = await db_session.get(
        models.Conversation, response.json()["conversation_id"]
    )
    assert conversation.user_id == test_user.id
    assert conversation.title == question.strip()[:60]


# =========================
# Failures become error messages
# =========================
@pytest.mark.asyncio
async def test_drop_statement_is_rejected_and_not_executed(
    client: AsyncClient, auth_headers_user, generator, sample_transactions, db_session
):
    generator.push("DROP TABLE transactions")

    response = await _ask(client, auth_headers_user, "Delete everything")

    assert response.status_code == 200
    data = response.json()
    assert data["result_format"] == "error"
    assert data["error_message"] == READ_ONLY_REJECTION
    assert data["sql_query"] is None
    assert data["result_data"] is None

    count = (await db_session.execute(select(func.count(models.Transaction.id)))).scalar()
    assert count == len(sample_transactions)


@pytest.mark.asyncio
async def test_generation_failure_is_recorded(
    client: AsyncClient, auth_headers_user, generator
):
    generator.push(GenerationError("quota exceeded"))

    response = await _ask(client, auth_headers_user, "Top merchants")

    data = response.json()
    assert response.status_code == 200
    assert data["result_format"] == "error"
    assert data["error_message"] == "Failed to generate SQL: quota exceeded"
    assert data["sql_query"] is None
    assert data["result_data"] is None


@pytest.mark.asyncio
async def test_execution_failure_keeps_statement(
    client: AsyncClient, auth_headers_user, generator
):
    generator.push("SELECT * FROM missing_table")

    response = await _ask(client, auth_headers_user, "Show me the missing table")

    data = response.json()
    assert data["result_format"] == "error"
    assert data["error_message"].startswith("Query execution failed: ")
    assert data["sql_query"] == "SELECT * FROM missing_table"
    assert data["result_data"] is None


@pytest.mark.asyncio
async def test_storage_failure_is_500(
    client: AsyncClient, auth_headers_user, generator, monkeypatch
):
    generator.push("SELECT 1 AS one")

    async def broken_append(*args, **kwargs):
        raise PersistenceError("failed to save message: disk full")

    monkeypatch.setattr("app.core.conversations.append_message", broken_append)

    response = await _ask(client, auth_headers_user, "Anything")

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to save message"


@pytest.mark.asyncio
async def test_slow_generation_is_recorded_as_timeout(
    client: AsyncClient, auth_headers_user, test_engine
):
    """The question budget also bounds the generation call"""

    class StalledGenerator(TextGenerator):
        async def generate(self, prompt: str) -> str:
            await asyncio.sleep(10)
            return "SELECT 1"

    executor = BoundedExecutor(test_engine, timeout_seconds=0.2, max_rows=100)
    stalled = QueryPipeline(StalledGenerator(), executor, timeout_seconds=0.2)
    app.dependency_overrides[get_query_pipeline] = lambda: stalled

    response = await asyncio.wait_for(
        _ask(client, auth_headers_user, "Top merchants"), timeout=5
    )

    assert response.status_code == 200
    data = response.json()
    assert data["result_format"] == "error"
    assert data["error_message"] == "Failed to generate SQL: generation timed out"
    assert data["result_data"] is None
    assert data["execution_time_ms"] < 5000


@pytest.mark.asyncio
async def test_unsaved_answer_leaves_no_empty_conversation(
    client: AsyncClient, auth_headers_user, generator, db_session, monkeypatch
):
    """A new conversation is written in the same commit as its first message"""
    generator.push("SELECT 1 AS one")

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_session, "commit", failing_commit)

    response = await _ask(client, auth_headers_user, "Anything")

    assert response.status_code == 500
    count = await db_session.execute(select(func.count(models.Conversation.id)))
    assert count.scalar() == 0


# =========================
# Conversations and access
# =========================
@pytest.mark.asyncio
async def test_follow_up_sees_previous_questions(
    client: AsyncClient, auth_headers_user, generator, sample_transactions
):
    generator.push(
        "SELECT COUNT(*) AS cnt FROM transactions",
        "SELECT COUNT(*) AS cnt FROM transactions WHERE location_city = 'Almaty'",
    )

    first = await _ask(client, auth_headers_user, "How many transactions?")
    conversation_id = first.json()["conversation_id"]
    second = await _ask(client, auth_headers_user, "Only in Almaty", conversation_id)

    assert second.json()["conversation_id"] == conversation_id
    assert "Previous conversation context" not in generator.prompts[0]
    assert "- How many transactions?" in generator.prompts[1]
    assert "User Query: Only in Almaty" in generator.prompts[1]


@pytest.mark.asyncio
async def test_someone_elses_conversation_is_404(
    client: AsyncClient, auth_headers_user, auth_headers_other, generator
):
    generator.push("SELECT 1 AS one")
    first = await _ask(client, auth_headers_user, "Mine")

    response = await _ask(
        client, auth_headers_other, "Theirs", first.json()["conversation_id"]
    )

    assert response.status_code == 404
    assert len(generator.prompts) == 1


@pytest.mark.asyncio
async def test_admin_cannot_write_to_users_conversation(
    client: AsyncClient, auth_headers_user, auth_headers_admin, generator
):
    generator.push("SELECT 1 AS one")
    first = await _ask(client, auth_headers_user, "Mine")

    response = await _ask(
        client, auth_headers_admin, "Admin question", first.json()["conversation_id"]
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unknown_conversation_is_404(client: AsyncClient, auth_headers_user):
    response = await _ask(client, auth_headers_user, "Hello", conversation_id=9999)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_blank_query_is_400(client: AsyncClient, auth_headers_user):
    response = await _ask(client, auth_headers_user, "   ")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_query_requires_auth(client: AsyncClient):
    response = await client.post("/query", json={"query": "Top merchants"})
    assert response.status_code == 401


# =========================
# Analysis
# =========================
@pytest.mark.asyncio
async def test_analysis_of_answered_question(
    client: AsyncClient, auth_headers_user, generator, sample_transactions
):
    generator.push(TOP_MERCHANTS_SQL, "Technodom leads with almost 1000 USD.")
    answered = await _ask(client, auth_headers_user, "Top 5 merchants by amount")
    message_id = answered.json()["id"]

    response = await client.post(
        f"/query/messages/{message_id}/analysis", headers=auth_headers_user
    )

    assert response.status_code == 200
    assert response.json() == {
        "message_id": message_id,
        "analysis": "Technodom leads with almost 1000 USD.",
    }
    assert "Query Results (Format: table)" in generator.prompts[-1]


@pytest.mark.asyncio
async def test_analysis_of_error_message_is_400(
    client: AsyncClient, auth_headers_user, generator
):
    generator.push("DROP TABLE transactions")
    rejected = await _ask(client, auth_headers_user, "Drop it")

    response = await client.post(
        f"/query/messages/{rejected.json()['id']}/analysis", headers=auth_headers_user
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_analysis_generation_failure_is_502(
    client: AsyncClient, auth_headers_user, generator
):
    generator.push("SELECT 1 AS one", GenerationError("model overloaded"))
    answered = await _ask(client, auth_headers_user, "One")

    response = await client.post(
        f"/query/messages/{answered.json()['id']}/analysis", headers=auth_headers_user
    )

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_analysis_of_someone_elses_message_is_404(
    client: AsyncClient, auth_headers_user, auth_headers_other, generator
):
    generator.push("SELECT 1 AS one")
    answered = await _ask(client, auth_headers_user, "One")

    response = await client.post(
        f"/query/messages/{answered.json()['id']}/analysis", headers=auth_headers_other
    )

    assert response.status_code == 404
