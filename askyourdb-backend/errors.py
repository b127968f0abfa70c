"""
AskYourDB - Error Taxonomy
==========================

Every failure the query pipeline raises on purpose is an AppError subclass.
The HTTP layer maps `status` straight onto the response code.

    ValidationError  -> plan rejected by policy (client-correctable)
    DatabaseError    -> connection / execution / adapter-level problems
    LLMError         -> plan generation provider failed or returned garbage

Ambiguity is NOT an error - see query_plan.ClarificationRequest.
"""


class AppError(Exception):
    """Base class for errors that carry an HTTP status."""

    def __init__(self, message: str, status: int = 500, is_operational: bool = True):
        super().__init__(message)
        self.message = message
        self.status = status
        self.is_operational = is_operational


class ValidationError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status=400)


class DatabaseError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status=500)


class LLMError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status=503)


# ============================================================================
# MESSAGES
# ============================================================================

EMPTY_PLAN = "Empty query plan received"
LLM_NO_PLAN = "LLM did not return a valid plan"
RAW_SQL_NOT_PERMITTED = "Raw SQL queries are not permitted"
UNKNOWN_TABLE = "Unknown table"
UNKNOWN_COLLECTION = "Unknown collection"
DB_NOT_INITIALIZED = "Database connection not initialized"
MONGO_REQUIRES_COLLECTION = "MongoDB operations require a collection name"
UNSUPPORTED_OPERATION = "Unsupported database operation"
AGGREGATE_REQUIRES_PIPELINE = "Aggregate operation requires a valid pipeline array"
