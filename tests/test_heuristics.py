"""Tests for the auto-save classifiers."""

from convomem.memory.heuristics import (
    detect_code_snippet,
    detect_preference,
    detect_project_knowledge,
    detect_solution,
    find_substantial_code_block,
)
from convomem.memory.models import MemoryType

CODE_BLOCK = (
    "```python\n"
    "def summarize_orders(orders):\n"
    "    totals = {}\n"
    "    for order in orders:\n"
    "        totals[order.customer] = totals.get(order.customer, 0) + order.amount\n"
    "```"
)


# -- preference ----------------------------------------------------------------


def test_preference_detected() -> None:
    candidate = detect_preference("I prefer dark mode in the editor.")

    assert candidate is not None
    assert candidate.type is MemoryType.USER_PREFERENCE
    assert candidate.confidence == 0.8
    assert candidate.title == "User Preference: I prefer dark mode in the editor"
    assert candidate.content == "I prefer dark mode in the editor"
    assert candidate.tags == ["preference", "user-stated"]


def test_identity_outranks_preference() -> None:
    candidate = detect_preference("My name is Alice. I like short answers!")

    assert candidate.confidence == 0.9
    assert candidate.tags == ["identity", "user-info"]
    assert candidate.title.startswith("User Identity: ")
    assert candidate.content == "My name is Alice. I like short answers"


def test_preference_keeps_only_matching_sentences() -> None:
    candidate = detect_preference("The weather is nice. I usually write tests first. Thanks!")
    assert candidate.content == "I usually write tests first"


def test_long_preference_title_is_truncated() -> None:
    candidate = detect_preference(
        "I prefer verbose explanations with plenty of examples for every concept"
    )
    assert candidate.title == (
        "User Preference: I prefer verbose explanations with plenty of examp..."
    )


def test_no_preference() -> None:
    assert detect_preference("What time is it in Tokyo?") is None


# -- solution ------------------------------------------------------------------


def test_solution_detected() -> None:
    candidate = detect_solution(
        "I get an error when I run the tests", "You can clear the cache and rerun."
    )

    assert candidate.type is MemoryType.SOLUTION
    assert candidate.confidence == 0.7
    assert candidate.title == "Solution: I get an error when I run the tests"
    assert candidate.content == (
        "Problem: I get an error when I run the tests\n\n"
        "Solution: You can clear the cache and rerun."
    )


def test_solution_needs_both_sides() -> None:
    assert detect_solution("I get an error", "That is unfortunate.") is None
    assert detect_solution("Tell me a story", "You can imagine a dragon.") is None


# -- code snippet --------------------------------------------------------------


def test_code_snippet_detected() -> None:
    candidate = detect_code_snippet(f"Here it is:\n{CODE_BLOCK}\nEnjoy.")

    assert candidate.type is MemoryType.CODE_SNIPPET
    assert candidate.confidence == 0.6
    assert candidate.title == "Python Code Snippet"
    assert candidate.tags == ["code", "python", "snippet"]
    assert candidate.content == CODE_BLOCK


def test_short_code_block_ignored() -> None:
    assert detect_code_snippet("```\nx = 1\n```") is None
    assert find_substantial_code_block("no code at all") is None


def test_unlabelled_code_block() -> None:
    block = CODE_BLOCK.replace("```python", "```")
    candidate = detect_code_snippet(block)
    assert candidate.title == "Code Code Snippet"
    assert candidate.tags == ["code", "code", "snippet"]


# -- project knowledge ---------------------------------------------------------


def test_project_knowledge_requires_project() -> None:
    user = "How is the database schema laid out?"
    response = "Orders reference customers by id."

    assert detect_project_knowledge(user, response, None) is None

    candidate = detect_project_knowledge(user, response, "shop")
    assert candidate.type is MemoryType.PROJECT_KNOWLEDGE
    assert candidate.confidence == 0.5
    assert candidate.tags == ["project", "knowledge", "shop"]
    assert candidate.title == "Project Knowledge: How is the database schema laid out?"


def test_project_knowledge_needs_cue() -> None:
    assert detect_project_knowledge("Good morning", "Hello there", "shop") is None
