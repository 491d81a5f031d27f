# -----------------------------------------------------------------------------
# ERRORS
# Generation, validation and execution problems end up as stored error
# messages. Only PersistenceError is meant to reach the HTTP layer from
# the query pipeline.
# -----------------------------------------------------------------------------


class NL2SQLError(Exception):
    """Base class for every error raised by the question-to-SQL flow."""


class GenerationError(NL2SQLError):
    """The text-generation backend failed, timed out, or returned nothing."""


# =========================
# Execution
# =========================
class ExecutionError(NL2SQLError):
    """Running a validated statement against the store failed."""


class ConnectionAcquireError(ExecutionError):
    pass


class StatementError(ExecutionError):
    pass


class RowConversionError(ExecutionError):
    pass


class RowIterationError(ExecutionError):
    pass


class QueryTimeoutError(ExecutionError):
    pass


# =========================
# Persistence / conversations
# =========================
class PersistenceError(NL2SQLError):
    """The outcome of a question could not be recorded."""


class ConversationNotFound(NL2SQLError):
    """Conversation or message is missing, or belongs to someone else."""


class ConversationAccessDenied(ConversationNotFound):
    """Raised when the record exists but the user may not touch it."""
