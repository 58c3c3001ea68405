from __future__ import annotations

import os
from dataclasses import dataclass


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    default_llm_provider: str = os.getenv("DEFAULT_LLM_PROVIDER", "anthropic")
    default_model: str = os.getenv("DEFAULT_MODEL", "claude-sonnet-4-20250514")
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    xai_api_key: str = os.getenv("XAI_API_KEY", "")
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    anthropic_base_url: str = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    xai_base_url: str = os.getenv("XAI_BASE_URL", "https://api.x.ai/v1")
    llm_timeout_seconds: int = _int("LLM_TIMEOUT_SECONDS", 25)
    llm_max_tokens: int = _int("LLM_MAX_TOKENS", 1024)

    # Empty or unknown values fall through to v1.
    agent_version: str = os.getenv("AGENT_VERSION", "")
    max_tool_rounds: int = _int("MAX_TOOL_ROUNDS", 3)

    memory_max_recent_messages: int = _int("MEMORY_MAX_RECENT_MESSAGES", 10)
    memory_max_execution_logs: int = _int("MEMORY_MAX_EXECUTION_LOGS", 5)
    memory_max_summaries: int = _int("MEMORY_MAX_SUMMARIES", 3)
    memory_max_rag_chunks: int = _int("MEMORY_MAX_RAG_CHUNKS", 3)
    memory_max_notes: int = _int("MEMORY_MAX_NOTES", 20)
    rag_max_results: int = _int("RAG_MAX_RESULTS", 8)
    record_chunk_size: int = _int("RECORD_CHUNK_SIZE", 500)

    note_dedupe_similarity: float = _float("NOTE_DEDUPE_SIMILARITY", 0.7)
    note_dedupe_window_seconds: int = _int("NOTE_DEDUPE_WINDOW_SECONDS", 60 * 60)
    notes_consolidation_max_notes: int = _int("NOTES_CONSOLIDATION_MAX_NOTES", 100)
    notes_consolidation_max_rounds: int = _int("NOTES_CONSOLIDATION_MAX_ROUNDS", 5)
    notes_consolidation_interval_seconds: int = _int("NOTES_CONSOLIDATION_INTERVAL_SECONDS", 6 * 60 * 60)

    appointment_read_attempts: int = _int("APPOINTMENT_READ_ATTEMPTS", 2)
    appointment_read_retry_seconds: float = _float("APPOINTMENT_READ_RETRY_SECONDS", 0.5)

    google_sheets_access_token: str = os.getenv("GOOGLE_SHEETS_ACCESS_TOKEN", "")
    google_sheets_base_url: str = os.getenv("GOOGLE_SHEETS_BASE_URL", "https://sheets.googleapis.com/v4")
    google_sheets_timeout_seconds: int = _int("GOOGLE_SHEETS_TIMEOUT_SECONDS", 10)

    serpapi_api_key: str = os.getenv("SERPAPI_API_KEY", "")
    serper_api_key: str = os.getenv("SERPER_API_KEY", "")
    search_timeout_seconds: int = _int("SEARCH_TIMEOUT_SECONDS", 10)

    twilio_account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    twilio_whatsapp_number: str = os.getenv("TWILIO_WHATSAPP_NUMBER", "")
    twilio_base_url: str = os.getenv("TWILIO_BASE_URL", "https://api.twilio.com/2010-04-01")

    redis_url: str = os.getenv("REDIS_URL", "")

    diagnostic_log_path: str = os.getenv("DIAGNOSTIC_LOG_PATH", "./data/diagnostics.log.jsonl")
    analytics_log_path: str = os.getenv("ANALYTICS_LOG_PATH", "./data/analytics.log.jsonl")
    conversation_store_path: str = os.getenv("CONVERSATION_STORE_PATH", "./data/conversations.json")
    message_store_path: str = os.getenv("MESSAGE_STORE_PATH", "./data/messages.json")
    notes_store_path: str = os.getenv("NOTES_STORE_PATH", "./data/agent_notes.json")
    plan_store_path: str = os.getenv("PLAN_STORE_PATH", "./data/execution_plans.json")
    summary_store_path: str = os.getenv("SUMMARY_STORE_PATH", "./data/conversation_summaries.json")
    knowledge_store_path: str = os.getenv("KNOWLEDGE_STORE_PATH", "./data/rag_chunks.json")
    records_store_path: str = os.getenv("RECORDS_STORE_PATH", "./data/agent_records.json")
    modification_requests_path: str = os.getenv("MODIFICATION_REQUESTS_PATH", "./data/record_modification_requests.json")
    tenant_store_path: str = os.getenv("TENANT_STORE_PATH", "./data/tenants.json")
    trial_days: int = _int("TRIAL_DAYS", 30)
    rate_limit_per_minute: int = _int("RATE_LIMIT_PER_MINUTE", 60)

    debug: bool = _bool("DEBUG", True)


SETTINGS = Settings()
