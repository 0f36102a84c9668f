"""
Error types and the query error taxonomy
"""

from enum import Enum
from typing import List, Optional

class PayloadValidationError(Exception):
    """Webhook body has the wrong shape altogether (integration bug)"""

class IntentParseError(Exception):
    """The LLM returned something that could not be parsed into a query"""

class QueryExecutionError(Exception):
    """The executor reported an error for a parsed query"""

class BlobStoreError(Exception):
    """File could not be persisted to the blob store"""

class AttachmentDownloadError(Exception):
    """Attachment bytes could not be fetched from the platform"""

class LinkingError(Exception):
    """Linking token or verification code could not be used"""

class ErrorCode(str, Enum):
    PARSING_FAILED = "PARSING_FAILED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    NO_DATA_FOUND = "NO_DATA_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"
    TIMEOUT = "TIMEOUT"
    INVALID_QUERY = "INVALID_QUERY"
    PERMISSION_DENIED = "PERMISSION_DENIED"

ERROR_MESSAGES = {
    ErrorCode.PARSING_FAILED: "I couldn't understand your question",
    ErrorCode.EXECUTION_FAILED: "I encountered an issue while searching",
    ErrorCode.NO_DATA_FOUND: "No matching documents found",
    ErrorCode.DATABASE_ERROR: "There's a temporary issue accessing your files",
    ErrorCode.TIMEOUT: "Your request took too long to process",
    ErrorCode.INVALID_QUERY: "Please try rephrasing your question",
    ErrorCode.PERMISSION_DENIED: "You don't have access to the requested data",
}

ERROR_SUGGESTIONS = {
    ErrorCode.PARSING_FAILED: [
        "Try asking 'How many files do I have?'",
        "Ask 'Show me invoices from this month'",
        "Try 'List my pending documents'",
    ],
    ErrorCode.EXECUTION_FAILED: [
        "Please try rephrasing your question",
        "Try a simpler query",
        "If the issue persists, contact support",
    ],
    ErrorCode.NO_DATA_FOUND: [
        "Try broadening your search criteria",
        "Check if you have any files uploaded",
        "Try asking about different time periods",
    ],
    ErrorCode.DATABASE_ERROR: [
        "Please try again in a moment",
        "If the issue persists, contact support",
    ],
    ErrorCode.TIMEOUT: [
        "Try a simpler question",
        "Break your request into smaller parts",
    ],
    ErrorCode.INVALID_QUERY: [
        "Try asking 'How many files do I have?'",
        "Ask 'Show me invoices from this month'",
    ],
    ErrorCode.PERMISSION_DENIED: [
        "Check your account permissions",
        "Contact your administrator",
    ],
}

EXAMPLE_QUESTIONS = [
    "How many files do I have?",
    "Show me invoices from this month",
    "List pending documents",
]

# Checked in order; first match wins
_KEYWORD_RULES = [
    (ErrorCode.TIMEOUT, ("timeout", "timed out")),
    (ErrorCode.PERMISSION_DENIED, ("permission", "access denied")),
    (ErrorCode.DATABASE_ERROR, ("database", "connection")),
    (ErrorCode.PARSING_FAILED, ("parse", "invalid")),
    (ErrorCode.NO_DATA_FOUND, ("no data", "not found", "no results")),
]

class NLQError(Exception):
    """User-presentable query pipeline error"""

    def __init__(self, code: ErrorCode, message: Optional[str] = None,
                 suggestions: Optional[List[str]] = None, detail: Optional[str] = None):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        self.suggestions = suggestions if suggestions is not None else list(ERROR_SUGGESTIONS[code])
        self.detail = detail
        super().__init__(self.message)

    @classmethod
    def from_error(cls, error: BaseException) -> "NLQError":
        """Classify an arbitrary exception by keywords in its message"""
        if isinstance(error, NLQError):
            return error

        text = str(error).lower()
        for code, keywords in _KEYWORD_RULES:
            if any(keyword in text for keyword in keywords):
                return cls(code, detail=str(error))
        return cls(ErrorCode.EXECUTION_FAILED, detail=str(error))

def create_error_response_text(error: NLQError) -> str:
    """Render the user-facing text for a classified error"""
    text = f"❌ {error.message}"

    if error.suggestions:
        text += "\n\n💡 *Suggestions:*\n"
        text += "\n".join(f"• {suggestion}" for suggestion in error.suggestions)

    if error.code in (ErrorCode.PARSING_FAILED, ErrorCode.INVALID_QUERY):
        text += "\n\n*Example questions:*\n"
        text += "\n".join(f"• {example}" for example in EXAMPLE_QUESTIONS)

    return text
