"""Tests for the policy knowledge base."""

import re

from services.policy_kb import PolicyKnowledgeBase, split_paragraphs
from services.vector_store import VectorStore


def test_split_handles_all_blank_line_styles():
    corpus = "first para\n\nsecond para\r\n\r\nthird para\r\rfourth\n\n\n\n  \n\nfifth"
    assert split_paragraphs(corpus) == ["first para", "second para", "third para", "fourth", "fifth"]


def test_ingest_assigns_ordinals_and_resets(policy):
    items = policy.collection.find()
    assert [i.metadata["ordinal"] for i in items] == list(range(6))

    assert policy.ingest("Only one paragraph that is long enough to be kept as context.") == 1
    assert policy.collection.count() == 1


def test_query_returns_cleaned_chunks_in_document_order(policy):
    context = policy.query_context("password policy authentication encryption", top_k=6)

    assert "Passwords must be at least 12 characters." in context
    # document order, not relevance order
    ordinals = [
        next(i.metadata["ordinal"] for i in policy.collection.find() if i.metadata["text"] == c)
        for c in context
    ]
    assert ordinals == sorted(ordinals)
    # header, page number and title lines never come back
    assert "1. Password Management" not in context
    assert "Page 2" not in context
    assert all(not c.startswith("ACME") for c in context)


def test_clean_dedupes_and_drops_short_fragments(policy):
    long_text = "Removable media must be encrypted before leaving the office."
    cleaned = policy.clean([
        f"  {long_text}  ",
        long_text,
        "Too short to be useful.",
        "x" * 40,
        "x" * 41,
    ])
    assert cleaned == [long_text, "x" * 41]


def test_boilerplate_patterns_are_replaceable(tmp_path, embedder):
    kb = PolicyKnowledgeBase(
        VectorStore(tmp_path / "p", name="p"),
        embedder,
        boilerplate_patterns=[re.compile(r"^CONFIDENTIAL")],
    )
    text = "CONFIDENTIAL - internal distribution only, do not forward."
    assert kb.clean([text]) == []
    assert kb.clean(["1. Scope of this policy and who it applies to"]) == [
        "1. Scope of this policy and who it applies to"
    ]


def test_empty_corpus_gives_empty_context(empty_policy):
    assert empty_policy.ingest("") == 0
    assert empty_policy.query_context("password policy") == []


def test_numbered_rules_survive_default_cleaning(policy):
    rule = "3. All employees must enable MFA on every device used for work"
    header = "7.2. Remote Access and Network Security Standards"
    assert policy.clean([header, rule]) == [rule]
