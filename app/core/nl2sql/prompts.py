from typing import List, Optional, Sequence

# -----------------------------------------------------------------------------
# PROMPTS MODULE
# Purpose: build the instructions sent to the text-generation backend.
# Why: the model only knows the data through this text, so the schema, the
# recent questions and the output rules all have to be spelled out here.
# -----------------------------------------------------------------------------

SQL_HISTORY_LIMIT = 10
ANALYSIS_HISTORY_LIMIT = 5


SCHEMA_CONTEXT = """CREATE TABLE transactions (
    id SERIAL PRIMARY KEY,
    card_no VARCHAR(255) NOT NULL,
    date DATE NOT NULL,
    process_date DATE NOT NULL,
    trx_amount_usd DECIMAL(15, 2),
    trx_amount_eur DECIMAL(15, 2),
    trx_amount_local DECIMAL(15, 2),
    trx_cnt_usd INTEGER DEFAULT 0,
    trx_cnt_eur INTEGER DEFAULT 0,
    trx_cnt_local INTEGER DEFAULT 0,
    interchange_fee DECIMAL(15, 2),
    merch_name VARCHAR(255),
    agg_merch_name VARCHAR(255),
    issuer_code VARCHAR(50),
    issuer_country VARCHAR(100),
    bin6_code VARCHAR(6),
    acquirer_code VARCHAR(50),
    acquirer_country VARCHAR(100),
    trx_type VARCHAR(50),
    trx_direction VARCHAR(10) CHECK (trx_direction IN ('plus', 'minus')),
    mcc VARCHAR(10),
    mcc_group VARCHAR(100),
    input_mode VARCHAR(50),
    wallet_type VARCHAR(50),
    product_type VARCHAR(50),
    authorization_status VARCHAR(50),
    authorization_response_code VARCHAR(10),
    location_id VARCHAR(100),
    location_city VARCHAR(100),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

Common query patterns:
- Date filtering: WHERE date >= '2024-01-01' AND date <= '2024-03-31' (for Q1 2024)
- Merchant filtering: WHERE merch_name = 'Merchant Name' OR agg_merch_name = 'Merchant Name'
- Location filtering: WHERE location_city = 'Almaty' (use SINGLE quotes for strings)
- Aggregations: SUM(trx_amount_usd), SUM(trx_amount_eur), SUM(trx_amount_local), COUNT(*), AVG(trx_amount_usd)
- Top N queries: ORDER BY column DESC LIMIT N
- Grouping: GROUP BY location_city, merch_name, mcc_group, etc.
- Type filtering: WHERE trx_type = 'POS'
- Direction filtering: WHERE trx_direction = 'plus' (outgoing) OR trx_direction = 'minus' (incoming)
- Status filtering: WHERE authorization_status = 'approved' OR authorization_status = 'declined'
- IMPORTANT: Always use SINGLE QUOTES (') for string values, NEVER double quotes (")
- IMPORTANT: Use 'date' column for transaction date, 'process_date' for processing date
- IMPORTANT: Amount columns are trx_amount_usd, trx_amount_eur and trx_amount_local"""


SQL_RULES = [
    "Generate ONLY one valid PostgreSQL SELECT statement",
    "Use proper table and column names from the schema",
    "Always use SINGLE QUOTES (') for string literals, NEVER double quotes (\") - double quotes are only for identifiers",
    "For date ranges, use proper date functions (e.g., DATE_TRUNC, INTERVAL)",
    "For aggregations, use appropriate GROUP BY clauses",
    "Return ONLY the SQL statement, no explanations, prose or markdown code fences",
    "If the question is ambiguous, generate a reasonable interpretation",
    "Use proper JOINs when needed",
    "Limit results to reasonable sizes (use LIMIT when appropriate)",
    "Handle NULL values appropriately",
    "Example: WHERE location_city = 'Almaty' (correct) NOT WHERE location_city = \"Almaty\" (wrong)",
]

ANALYSIS_RULES = [
    "Analyze the query results and provide meaningful insights",
    "Explain what the data shows in a conversational, natural way",
    "Identify patterns, trends, or interesting findings",
    "Answer follow-up questions about the data",
    "If asked about seasonality, trends, or 'why', provide analytical explanations",
    "Do not invent numbers that are not in the results",
]


def recent_history(history: Optional[Sequence[str]], limit: int) -> List[str]:
    """
    Keep the `limit` most recent entries of a chronological history.

    Example:
        recent_history(["q1", "q2", "q3"], 2) → ["q2", "q3"]
    """
    if not history or limit <= 0:
        return []
    return list(history)[-limit:]


def _history_block(history: List[str]) -> str:
    if not history:
        return ""
    lines = "\n".join(f"- {entry}" for entry in history)
    return f"Previous conversation context:\n{lines}\n\n"


def _numbered(rules: List[str]) -> str:
    return "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, start=1))


def build_sql_prompt(
    question: str,
    history: Optional[Sequence[str]] = None,
    schema: str = SCHEMA_CONTEXT,
) -> str:
    """
    Build the SQL-generation prompt.

    Order: role framing, schema, history (oldest first, capped at
    SQL_HISTORY_LIMIT), the new question, generation rules.

    Args:
        question: The new natural-language question (non-empty)
        history: Earlier questions of the same conversation, oldest first
        schema: Schema description shown to the model

    Returns:
        Prompt text for TextGenerator.generate()
    """
    if not question or not question.strip():
        raise ValueError("question must not be empty")

    return (
        "You are a SQL expert assistant. Your task is to convert natural "
        "language questions into PostgreSQL SQL statements.\n\n"
        f"Database Schema:\n{schema}\n\n"
        f"{_history_block(recent_history(history, SQL_HISTORY_LIMIT))}"
        f"User Query: {question.strip()}\n\n"
        f"Rules:\n{_numbered(SQL_RULES)}\n\n"
        "Generate the SQL query:"
    )


def build_analysis_prompt(
    question: str,
    sql_query: str,
    result_data: Optional[str],
    result_format: str,
    history: Optional[Sequence[str]] = None,
    schema: str = SCHEMA_CONTEXT,
) -> str:
    """
    Build the free-form commentary prompt for an already executed question.
    The model output is shown to the user as text and never executed.
    """
    if not question or not question.strip():
        raise ValueError("question must not be empty")

    results = result_data if result_data else "(no rows)"
    return (
        "You are a helpful data analyst assistant. Your task is to provide "
        "conversational analysis and insights about query results.\n\n"
        f"Database Schema:\n{schema}\n\n"
        f"You should:\n{_numbered(ANALYSIS_RULES)}\n\n"
        f"{_history_block(recent_history(history, ANALYSIS_HISTORY_LIMIT))}"
        f"User's Question: {question.strip()}\n\n"
        f"SQL Query Executed: {sql_query}\n\n"
        f"Query Results (Format: {result_format}):\n{results}\n\n"
        "Provide a conversational analysis of these results. If the user "
        "asked a specific question, answer it directly.\n\n"
        "Your analysis:"
    )
