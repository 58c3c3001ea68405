from __future__ import annotations

import re
from typing import Sequence, Tuple

from models.schemas import HistoryMessage, MessageRole

# The model ends its reply with this to ask for a human; users never see it.
HANDOFF_MARKER = "[HANDOFF]"

HANDOFF_TEXT = (
    "I've requested that a care team member join this chat. They'll be with you shortly, please stay on this page."
    "\n\nIf your need is urgent, please call your care team or 911 in an emergency."
)
REPEAT_HANDOFF_ACK = "A care team member has already been notified and will join shortly. Please stay on this page."
SAFE_FALLBACK_TEXT = "I could not generate a response. Please try rephrasing."
DELAYED_TEXT = "I apologize, but I'm experiencing delays. Please try again in a moment."

_WANTS_HUMAN = [
    re.compile(
        r"\b(talk|speak|connect|transfer|hand me off|get me)\s+(to|with)\s+(a\s+)?"
        r"(human|real\s+person|person|agent|someone|care\s+team|staff|representative)",
        re.IGNORECASE,
    ),
    re.compile(r"\b(let me\s+)?(talk|speak)\s+to\s+(a\s+)?(human|person|someone)", re.IGNORECASE),
    re.compile(r"\b(want|need)\s+to\s+(speak|talk)\s+to\s+(a\s+)?(human|person|someone)", re.IGNORECASE),
    re.compile(r"\b(real\s+person|human\s+agent|live\s+agent)", re.IGNORECASE),
]
_CARE_TEAM_HANDOFF = re.compile(r"speak with (a )?(care )?(coordinator|team|human|agent)", re.IGNORECASE)
_RECOMMENDS_TALKING = re.compile(r"recommend.*(speaking|talking) to", re.IGNORECASE)
_MARKER_AT_END = re.compile(r"\s*" + re.escape(HANDOFF_MARKER) + r"\s*$", re.IGNORECASE)

_UNHELPFUL_PHRASES = (
    "i'm not sure",
    "i am not sure",
    "i can't",
    "i cannot",
    "i don't have",
    "i do not have",
    "rephrase",
    "contact your doctor",
    "speak with a doctor",
    "recommend speaking",
    "recommend talking",
    "cannot diagnose",
    "can't diagnose",
    "beyond my",
    "outside my",
    "outside of my",
    "not able to help",
    "unable to help",
    "don't have enough",
    "don't have that information",
    "couldn't find",
    "could not find",
    "no information",
)


def wants_human(text: str) -> bool:
    return any(p.search(text or "") for p in _WANTS_HUMAN)


def strip_handoff_marker(text: str) -> Tuple[str, bool]:
    if HANDOFF_MARKER not in text:
        return text, False
    return _MARKER_AT_END.sub("", text).replace(HANDOFF_MARKER, "").strip(), True


def suggests_care_team(text: str, include_recommendations: bool = False) -> bool:
    if _CARE_TEAM_HANDOFF.search(text):
        return True
    return include_recommendations and bool(_RECOMMENDS_TALKING.search(text))


def last_reply_unhelpful(history: Sequence[HistoryMessage]) -> bool:
    last = next((m for m in reversed(history) if m.role == MessageRole.ASSISTANT), None)
    if last is None or not last.content:
        return False
    lower = last.content.lower()
    return any(p in lower for p in _UNHELPFUL_PHRASES)


def has_multiple_user_turns(history: Sequence[HistoryMessage]) -> bool:
    return sum(1 for m in history if m.role == MessageRole.USER) >= 2


def last_user_message(history: Sequence[HistoryMessage]) -> str:
    last = next((m for m in reversed(history) if m.role == MessageRole.USER), None)
    return last.content if last else ""
