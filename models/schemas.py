from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex


class ChannelType(str, Enum):
    WIDGET = "widget"
    WHATSAPP = "whatsapp"


class ConversationStatus(str, Enum):
    OPEN = "open"
    HANDOFF_REQUESTED = "handoff_requested"
    HUMAN_JOINED = "human_joined"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    HUMAN_AGENT = "human_agent"


class AgentVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


class IntentType(str, Enum):
    BOOK_APPOINTMENT = "book_appointment"
    CHECK_AVAILABILITY = "check_availability"
    QUERY_INFORMATION = "query_information"
    CREATE_NOTE = "create_note"
    GENERAL_CONVERSATION = "general_conversation"
    REQUEST_HUMAN = "request_human"
    CONFIRM_ACTION = "confirm_action"


class NoteCategory(str, Enum):
    COMMON_QUESTIONS = "common_questions"
    KEYWORDS = "keywords"
    ANALYTICS = "analytics"
    INSIGHTS = "insights"
    BOOKINGS = "bookings"
    OTHER = "other"


class NoteStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    ARCHIVED = "archived"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PlanStatus(str, Enum):
    READY = "ready"
    EXECUTING = "executing"
    NEEDS_INFO = "needs_info"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


ACTIVE_PLAN_STATUSES = {
    PlanStatus.READY,
    PlanStatus.EXECUTING,
    PlanStatus.NEEDS_INFO,
    PlanStatus.AWAITING_CONFIRMATION,
}


class SummaryScope(str, Enum):
    SHARED = "shared"
    USER = "user"


class ModificationType(str, Enum):
    EDIT = "edit"
    DELETE = "delete"


class ModificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ToolAction(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    EDIT = "edit"
    QUERY = "query"
    CREATE = "create"


class Conversation(BaseModel):
    conversation_id: str = Field(default_factory=_new_id)
    tenant_id: str
    user_id: Optional[str] = None
    external_user_id: Optional[str] = None
    channel: ChannelType = ChannelType.WIDGET
    status: ConversationStatus = ConversationStatus.OPEN
    joined_by: Optional[str] = None
    handoff_requested_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Message(BaseModel):
    message_id: str = Field(default_factory=_new_id)
    conversation_id: str
    tenant_id: str
    role: MessageRole
    content: str = ""
    image_urls: List[str] = Field(default_factory=list)
    seq: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def to_history(self) -> "HistoryMessage":
        return HistoryMessage(role=self.role, content=self.content, image_urls=list(self.image_urls))


class HistoryMessage(BaseModel):
    role: MessageRole
    content: str = ""
    image_urls: List[str] = Field(default_factory=list)


class IntentEntities(BaseModel):
    patient_name: Optional[str] = None
    phone: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    doctor: Optional[str] = None
    notes: Optional[str] = None
    query: Optional[str] = None


class ExtractedIntent(BaseModel):
    intent: IntentType
    confidence: float = Field(ge=0.0, le=1.0)
    entities: IntentEntities = Field(default_factory=IntentEntities)
    requires_tools: bool = False
    suggested_tools: List[str] = Field(default_factory=list)
    reasoning: str = ""


class DecomposedQuestion(BaseModel):
    original_question: str
    sub_questions: List[str] = Field(default_factory=list)
    is_complex: bool = False
    reasoning: str = ""


class PlanStep(BaseModel):
    step_number: int
    action: str
    description: str = ""
    tool_to_use: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    needs_user_input: bool = False
    user_prompt: Optional[str] = None
    requires_confirmation: bool = False
    confirmed: bool = False


class ExecutionPlan(BaseModel):
    plan_id: str = Field(default_factory=_new_id)
    tenant_id: str = ""
    conversation_id: Optional[str] = None
    revision: int = 1
    supersedes: Optional[str] = None
    description: str = ""
    actions_required: List[str] = Field(default_factory=list)
    steps: List[PlanStep] = Field(default_factory=list)
    current_step: int = 1
    missing_info: List[str] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.READY
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ProgressReport(BaseModel):
    current_step_guidance: str
    next_step: Optional[int] = None
    all_steps_completed: bool = False


class MissingInfoCheck(BaseModel):
    has_all_info: bool
    missing_fields: List[str] = Field(default_factory=list)
    prompt: Optional[str] = None


class ToolCall(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    verified: Optional[bool] = None
    action: Optional[ToolAction] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ExecutionLogEntry(BaseModel):
    tool_call: ToolCall
    result: ToolResult
    verified: bool = False
    attempt: int = 1
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class AgentNote(BaseModel):
    note_id: str = Field(default_factory=_new_id)
    tenant_id: str
    conversation_id: str
    user_id: Optional[str] = None
    patient_name: Optional[str] = None
    content: str
    category: NoteCategory = NoteCategory.OTHER
    status: NoteStatus = NoteStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ConversationSummary(BaseModel):
    summary_id: str = Field(default_factory=_new_id)
    tenant_id: str
    conversation_id: str
    summary: str
    key_topics: List[str] = Field(default_factory=list)
    scope: SummaryScope = SummaryScope.SHARED
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AgentRecord(BaseModel):
    record_id: str = Field(default_factory=_new_id)
    tenant_id: str
    title: str
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ModificationRequest(BaseModel):
    request_id: str = Field(default_factory=_new_id)
    tenant_id: str
    type: ModificationType
    record_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    reason: Optional[str] = None
    status: ModificationStatus = ModificationStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class RagChunk(BaseModel):
    chunk_id: str = Field(default_factory=_new_id)
    tenant_id: str
    source_id: Optional[str] = None
    text: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ConversationMemory(BaseModel):
    recent_messages: List[HistoryMessage] = Field(default_factory=list)
    synopsis: Optional[str] = None
    total_messages: int = 0


class StructuredState(BaseModel):
    notes: List[AgentNote] = Field(default_factory=list)
    active_plan: Optional[ExecutionPlan] = None
    appointments: List[Dict[str, str]] = Field(default_factory=list)


class AgentContext(BaseModel):
    conversation_memory: ConversationMemory = Field(default_factory=ConversationMemory)
    structured_state: StructuredState = Field(default_factory=StructuredState)
    execution_log_summary: str = ""
    long_term: List[ConversationSummary] = Field(default_factory=list)
    rag_chunks: List[str] = Field(default_factory=list)


class GoogleSheetEntry(BaseModel):
    spreadsheet_id: str
    range: Optional[str] = None
    use_when: str


class TenantAgentConfig(BaseModel):
    tenant_id: str
    agent_name: str = "CareMax Assistant"
    system_prompt: str = (
        "You are a helpful customer support assistant for a healthcare practice. "
        "Answer clearly and never give medical diagnoses."
    )
    thinking_instructions: str = "Be concise, empathetic, and safety-conscious."
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.7
    rag_enabled: bool = False
    web_search_enabled: bool = False
    google_sheets: List[GoogleSheetEntry] = Field(default_factory=list)
    agent_version: Optional[str] = None
    learning_only_prompt: Optional[str] = None
    consolidation_prompt: Optional[str] = None
    whatsapp_from_number: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class TenantAccount(BaseModel):
    tenant_id: str
    billing_plan_id: str = "free"
    subscription_status: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class BillingStatus(BaseModel):
    tenant_id: str
    billing_plan_id: str = "free"
    is_active: bool
    expired_reason: Optional[str] = None
    days_remaining: Optional[int] = None


class AgentResult(BaseModel):
    text: str
    request_handoff: bool = False


class TurnResult(BaseModel):
    conversation_id: str
    user_message_id: str
    assistant_message_id: Optional[str] = None
    assistant_content: Optional[str] = None
    request_handoff: bool = False
    status: ConversationStatus = ConversationStatus.OPEN


class DiagnosticEvent(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    tenant_id: str
    source: str
    step: str
    status: str = "ok"
    conversation_id: Optional[str] = None
    duration_ms: int = 0
    tool_calls: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
