from .agent_brain import AgentBrain
from .agent_notes import AgentNotesStore
from .context_builder import MemoryBuilder
from .conversation_store import ConversationStore
from .knowledge_index import KnowledgeIndex
from .plan_store import PlanStore
from .summary_store import SummaryStore

__all__ = [
    "AgentBrain",
    "AgentNotesStore",
    "MemoryBuilder",
    "ConversationStore",
    "KnowledgeIndex",
    "PlanStore",
    "SummaryStore",
]
