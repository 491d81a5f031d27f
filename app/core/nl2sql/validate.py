import re
from typing import List

# -----------------------------------------------------------------------------
# VALIDATE MODULE
# Purpose: lexical read-only gate in front of the executor.
# A statement passes only if it mentions SELECT and none of the write/DDL
# keywords below as a whole word. Not a parser: comments, string literals
# and statement separators are not understood, so it fails closed.
# -----------------------------------------------------------------------------

DENYLISTED_KEYWORDS = (
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "GRANT",
    "REVOKE",
)

REQUIRED_KEYWORD = "SELECT"

READ_ONLY_REJECTION = "only read-only statements are permitted"

# Anything that is not a word character separates tokens
_SEPARATORS = re.compile(r"\W+")


def normalize(sql: str) -> str:
    """
    Uppercase the statement and collapse every separator to one space,
    padded on both sides.

    Example:
        "select *\\nfrom t;drop table t" → " SELECT FROM T DROP TABLE T "
    """
    return " " + _SEPARATORS.sub(" ", sql.upper()).strip() + " "


def find_violations(sql: str) -> List[str]:
    """
    Return the rules a statement breaks (empty list means safe).

    Used for logging; users only ever see READ_ONLY_REJECTION.
    """
    padded = normalize(sql or "")
    violations = [kw for kw in DENYLISTED_KEYWORDS if f" {kw} " in padded]

    if f" {REQUIRED_KEYWORD} " not in padded:
        violations.append(f"missing {REQUIRED_KEYWORD}")
    return violations


def is_read_only(sql: str) -> bool:
    return not find_violations(sql)
