"""
Intent classification, answer-mode selection and prompt assembly.

Mode is decided before any summarisation call: a question goes to POLICY mode
only when it reads like a policy question AND the knowledge base returned
something to ground it on. Everything else is answered in SUMMARY mode from
the employee records, with whatever memory and policy context is available.
"""
from __future__ import annotations

import enum
import json
import re
from typing import Dict, List, Optional, Protocol, Sequence

UNREADABLE_DOCUMENT_REPLY = (
    "Sorry, I couldn't read the uploaded document. It looks empty or unreadable. "
    "Please upload a clearer copy or paste the relevant text directly."
)

MIN_READABLE_CHARS = 20

DOCUMENT_HEADER = "\n\n[Uploaded document content]\n"

POLICY_KEYWORDS = (
    r"polic(?:y|ies)",
    r"guidelines?",
    r"procedures?",
    r"compliance",
    r"passwords?",
    r"access\s+control",
    r"acceptable\s+use",
    r"data\s+(?:retention|classification|protection)",
    r"incident\s+response",
    r"security\s+standards?",
    r"mfa|multi[-\s]?factor",
    r"encryption",
    r"remote\s+(?:work|access)",
)

DOCUMENT_REFERENCE_KEYWORDS = (
    r"(?:this|that|the|my|previous|last|same|uploaded|attached)\s+"
    r"(?:document|doc|file|pdf|report|attachment|upload)",
    r"\buploaded\b",
    r"\battach(?:ed|ment)\b",
)


class AnswerMode(str, enum.Enum):
    POLICY = "policy"
    SUMMARY = "summary"


class IntentClassifier(Protocol):
    def is_policy_question(self, text: str) -> bool: ...

    def refers_to_document(self, text: str) -> bool: ...


class KeywordIntentClassifier:
    """Regex keyword heuristic; swap for a model-backed classifier if needed."""

    def __init__(
        self,
        policy_keywords: Sequence[str] = POLICY_KEYWORDS,
        document_keywords: Sequence[str] = DOCUMENT_REFERENCE_KEYWORDS,
    ) -> None:
        self._policy = re.compile(r"\b(?:" + "|".join(policy_keywords) + r")\b", re.IGNORECASE)
        self._document = re.compile("|".join(f"(?:{k})" for k in document_keywords), re.IGNORECASE)

    def is_policy_question(self, text: str) -> bool:
        return bool(self._policy.search(text or ""))

    def refers_to_document(self, text: str) -> bool:
        return bool(self._document.search(text or ""))


def is_readable_document(text: Optional[str]) -> bool:
    stripped = (text or "").strip()
    if len(stripped) < MIN_READABLE_CHARS:
        return False
    return any(ch.isalnum() for ch in stripped)


def augment_question(question: str, document_text: str) -> str:
    if not document_text:
        return question
    return f"{question}{DOCUMENT_HEADER}{document_text}"


def select_mode(question: str, policy_context: Sequence[str], classifier: IntentClassifier) -> AnswerMode:
    if classifier.is_policy_question(question) and len(policy_context) > 0:
        return AnswerMode.POLICY
    return AnswerMode.SUMMARY


def build_policy_answer(excerpts: Sequence[str]) -> List[str]:
    """Verbatim policy excerpts as answer pieces, in document order."""
    pieces = ["According to the organization's policy:\n\n"]
    for i, excerpt in enumerate(excerpts):
        suffix = "\n\n" if i < len(excerpts) - 1 else ""
        pieces.append(f"{excerpt}{suffix}")
    return pieces


def build_policy_prompt(question: str, excerpts: Sequence[str]) -> List[Dict[str, str]]:
    joined = "\n\n".join(excerpts)
    return [
        {
            "role": "system",
            "content": (
                "You are a security policy assistant for a CISO office. Answer using only the "
                "policy excerpts provided. If they do not answer the question, say so."
            ),
        },
        {"role": "user", "content": f"Policy excerpts:\n{joined}\n\nQuestion: {question}"},
    ]


def build_summary_prompt(
    memory: str,
    policy_context: Sequence[str],
    question: str,
    records: Sequence[Dict[str, object]],
) -> List[Dict[str, str]]:
    """Prompt sections in fixed order: memory, policy, question, records."""
    sections = [f"Conversation Memory (past context):\n{memory or 'None'}"]
    if policy_context:
        sections.append("Relevant policy context:\n" + "\n\n".join(policy_context))
    sections.append(f'The user asked: "{question}".')
    sections.append(
        "Based on the database query results below, generate a clear human-readable "
        "summary for a CISO officer.\n\n"
        f"Results: {json.dumps(list(records), indent=2, ensure_ascii=False, default=str)}"
    )
    return [{"role": "user", "content": "\n\n".join(sections)}]
