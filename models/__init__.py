from .errors import ConversationNotFoundError, InvalidTransitionError, LLMError
from .schemas import (
    AgentContext,
    AgentResult,
    AgentVersion,
    ConversationStatus,
    ExecutionPlan,
    ExtractedIntent,
    HistoryMessage,
    IntentType,
    MessageRole,
    ToolCall,
    ToolResult,
)

__all__ = [
    "AgentContext",
    "AgentResult",
    "AgentVersion",
    "ConversationNotFoundError",
    "ConversationStatus",
    "ExecutionPlan",
    "ExtractedIntent",
    "HistoryMessage",
    "IntentType",
    "InvalidTransitionError",
    "LLMError",
    "MessageRole",
    "ToolCall",
    "ToolResult",
]
