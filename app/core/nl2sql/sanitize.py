# app/core/nl2sql/sanitize.py
"""
SANITIZE MODULE - Turn raw model output into one candidate SQL statement

Purpose:
    1. Strip markdown code fences the model wraps around its answer
    2. Strip one pair of quotes wrapping the whole answer
    3. Rewrite double-quoted string literals to single quotes
       (PostgreSQL reads "x" as an identifier, not a value)

Data Flow:
    raw text → strip() → strip_code_fence() → strip() → strip_wrapping_quotes()
             → fix_double_quoted_literals() → candidate statement

The quote rewriting is a regex heuristic, not a tokenizer. Everything that
touches quotes lives behind fix_double_quoted_literals() so it can be swapped
for a real tokenizer without changing callers.

Known limitation: a double-quoted literal that looks like an identifier
("Almaty", "POS") is left alone by the last rule, unless an earlier rule
caught it in value position.
"""

import logging
import re

logger = logging.getLogger(__name__)


# ============================================================================
# PATTERNS
# ============================================================================

# ```sql ... ``` or ``` ... ``` (any language tag).
# A statement starting right after the fence is not a tag: ```SELECT\n...
CODE_FENCE_OPEN = re.compile(
    r"^```(?:(?!(?:select|with)\b)[A-Za-z0-9_+\-]*[ \t]*\n|(?:sql|postgresql|postgres|pgsql)\b)?",
    re.IGNORECASE,
)
CODE_FENCE_CLOSE = re.compile(r"\n?[ \t]*```$")

# = "x", IN ("x", LIKE "x", ILIKE "x", , "x"
VALUE_POSITION = re.compile(r'(=\s*|IN\s*\(|LIKE\s+|ILIKE\s+|,\s*)"([^"]+)"')

# WHERE col = "x", AND col = "x", ...
PREDICATE_POSITION = re.compile(r'(WHERE|AND|OR|HAVING)\s+(\w+)\s*=\s*"([^"]+)"')

ANY_DOUBLE_QUOTED = re.compile(r'"([^"]+)"')
IDENTIFIER_LIKE = re.compile(r"^[A-Z][a-zA-Z0-9_]*$")


# ============================================================================
# STEPS
# ============================================================================


def strip_code_fence(text: str) -> str:
    """
    Remove a surrounding markdown fence, with or without a language tag.

    Example:
        "```sql\\nSELECT 1\\n```" → "SELECT 1"
    """
    if not text.startswith("```"):
        return text

    text = CODE_FENCE_OPEN.sub("", text, count=1)
    text = CODE_FENCE_CLOSE.sub("", text, count=1)
    return text


def strip_wrapping_quotes(text: str) -> str:
    """
    Remove exactly one pair of matching quotes spanning the whole text.

    Why: str.strip("'") would also eat the closing quote of a trailing
    literal like ... WHERE city = 'Almaty'.
    """
    if len(text) < 2:
        return text

    for quote in ("'", '"'):
        if text.startswith(quote) and text.endswith(quote):
            return text[1:-1]
    return text


def _replace_remaining(match: re.Match) -> str:
    content = match.group(1)
    if "." in content or IDENTIFIER_LIKE.match(content):
        # schema.table or an identifier, keep as is
        return match.group(0)
    return f"'{content}'"


def fix_double_quoted_literals(sql: str) -> str:
    """
    Rewrite double-quoted string literals to single-quoted ones.

    Rules, in order:
        1. value position: = "x", IN ("x", LIKE "x", ILIKE "x", , "x"
        2. predicates:     WHERE|AND|OR|HAVING col = "x"
        3. anything else, unless it contains a dot or looks like an
           identifier (leading uppercase letter, then alphanumerics/_)

    Example:
        'SELECT * FROM transactions WHERE location_city = "almaty"'
        → "SELECT * FROM transactions WHERE location_city = 'almaty'"
    """
    sql = VALUE_POSITION.sub(r"\1'\2'", sql)
    sql = PREDICATE_POSITION.sub(r"\1 \2 = '\3'", sql)
    sql = ANY_DOUBLE_QUOTED.sub(_replace_remaining, sql)
    return sql


def sanitize_response(raw: str) -> str:
    """
    Extract one candidate statement from raw generated text.

    Never raises: anything unexpected falls back to the fence/quote stripped
    text.

    Args:
        raw: Text exactly as the generation backend returned it

    Returns:
        Cleaned statement (may still be invalid SQL, the validator decides)
    """
    if raw is None:
        return ""

    text = str(raw).strip()
    text = strip_code_fence(text)
    text = text.strip()
    text = strip_wrapping_quotes(text)

    try:
        return fix_double_quoted_literals(text)
    except Exception as error:  # pragma: no cover - regex substitution on str
        logger.warning(f"Quote normalization skipped: {error}")
        return text
