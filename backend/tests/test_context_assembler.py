"""Tests for intent classification, mode selection and prompt assembly."""

import json

import pytest

from services.context_assembler import (
    DOCUMENT_HEADER,
    AnswerMode,
    KeywordIntentClassifier,
    augment_question,
    build_policy_answer,
    build_summary_prompt,
    is_readable_document,
    select_mode,
)

classifier = KeywordIntentClassifier()


@pytest.mark.parametrize("question,expected", [
    ("What is the password policy?", True),
    ("Summarize our remote access guidelines", True),
    ("Is MFA mandatory?", True),
    ("Which employees have high risk?", False),
    ("Tell me about Alice Johnson", False),
])
def test_policy_intent(question, expected):
    assert classifier.is_policy_question(question) is expected


def test_document_reference_intent():
    assert classifier.refers_to_document("Summarize the uploaded file")
    assert classifier.refers_to_document("what does this document say about phishing")
    assert not classifier.refers_to_document("who is the riskiest employee")


@pytest.mark.parametrize("text,readable", [
    ("", False),
    ("     \n\t  ", False),
    ("%%%%%%%%%%%%%%%%%%%%%%%%%%%%%%", False),
    ("short text", False),
    ("This document lists the quarterly phishing results.", True),
])
def test_readability_check(text, readable):
    assert is_readable_document(text) is readable


def test_select_mode_needs_intent_and_context():
    assert select_mode("What is the password policy?", ["Passwords must be long."], classifier) is AnswerMode.POLICY
    assert select_mode("What is the password policy?", [], classifier) is AnswerMode.SUMMARY
    assert select_mode("Who is high risk?", ["Passwords must be long."], classifier) is AnswerMode.SUMMARY


def test_select_mode_uses_injected_classifier():
    class Always:
        def is_policy_question(self, text):
            return True

        def refers_to_document(self, text):
            return False

    assert select_mode("anything", ["ctx"], Always()) is AnswerMode.POLICY


def test_augment_question():
    assert augment_question("Q", "") == "Q"
    assert augment_question("Q", "DOC") == f"Q{DOCUMENT_HEADER}DOC"


def test_policy_answer_is_verbatim_and_ordered():
    pieces = build_policy_answer(["First rule is here.", "Second rule is here."])
    text = "".join(pieces)
    assert text.index("First rule is here.") < text.index("Second rule is here.")
    assert text.endswith("Second rule is here.")


def test_summary_prompt_section_order():
    records = [{"name": "Alice", "risk": "high"}]
    [message] = build_summary_prompt("past exchange", ["policy excerpt"], "who is risky?", records)
    content = message["content"]

    positions = [
        content.index("past exchange"),
        content.index("policy excerpt"),
        content.index("who is risky?"),
        content.index(json.dumps(records, indent=2)),
    ]
    assert positions == sorted(positions)


def test_summary_prompt_without_policy_context():
    [message] = build_summary_prompt("", [], "who is risky?", [])
    assert "policy context" not in message["content"]
    assert "Results: []" in message["content"]
