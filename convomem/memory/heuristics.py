"""Auto-save classifiers.

Each classifier is a pure function from conversation text to an
``AutoSaveCandidate`` (or None). They share no state and can run in any order.
"""

import re

from convomem.memory.models import AutoSaveCandidate, MemoryType

PREFERENCE_CUES = (
    "i prefer",
    "i like",
    "i want",
    "i always",
    "i usually",
    "my preference",
    "i tend to",
    "i typically",
    "i favor",
    "please remember",
    "remember that i",
    "note that i",
)

IDENTITY_CUES = (
    "my name is",
    "i am",
    "i'm",
    "call me",
    "my name's",
    "i go by",
    "you can call me",
    "my birthday is",
    "i was born",
)

PROBLEM_CUES = ("error", "issue", "problem", "bug", "fix", "help", "how to")
SOLUTION_CUES = ("here's how", "you can", "try this", "solution", "fix this")

PROJECT_KNOWLEDGE_CUES = (
    "architecture",
    "design",
    "structure",
    "database",
    "api",
    "requirements",
    "specification",
    "documentation",
    "workflow",
)

PREFERENCE_CONFIDENCE = 0.8
IDENTITY_CONFIDENCE = 0.9
SOLUTION_CONFIDENCE = 0.7
CODE_SNIPPET_CONFIDENCE = 0.6
PROJECT_KNOWLEDGE_CONFIDENCE = 0.5

SHORT_MESSAGE_LENGTH = 100
MIN_CODE_LINES = 3
MIN_CODE_CHARS = 100

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_CODE_LANGUAGE_RE = re.compile(r"```(\w+)")


def _preview(text: str, length: int) -> str:
    return text[:length] + ("..." if len(text) > length else "")


def _contains_any(text: str, cues: tuple[str, ...]) -> bool:
    return any(cue in text for cue in cues)


def detect_preference(user_message: str) -> AutoSaveCandidate | None:
    """Stated preferences ("I prefer ...") and identity facts ("my name is ...")."""
    lowered = user_message.lower()
    has_preference = _contains_any(lowered, PREFERENCE_CUES)
    has_identity = _contains_any(lowered, IDENTITY_CUES)
    if not has_preference and not has_identity:
        return None

    if has_identity:
        tags = ["identity", "user-info"]
        confidence = IDENTITY_CONFIDENCE
        reason = "User provided identity information"
    else:
        tags = ["preference", "user-stated"]
        confidence = PREFERENCE_CONFIDENCE
        reason = "User explicitly stated a preference"

    all_cues = PREFERENCE_CUES + IDENTITY_CUES
    sentences = [
        s.strip()
        for s in _SENTENCE_SPLIT_RE.split(user_message)
        if _contains_any(s.lower(), all_cues)
    ]

    if not sentences:
        if len(user_message) >= SHORT_MESSAGE_LENGTH:
            return None
        content = user_message.strip()
        title = f"User Info: {_preview(content, 50)}"
    else:
        content = ". ".join(sentences)
        prefix = "User Identity" if has_identity else "User Preference"
        title = f"{prefix}: {_preview(content, 50)}"

    return AutoSaveCandidate(
        type=MemoryType.USER_PREFERENCE,
        title=title,
        content=content,
        tags=tags,
        confidence=confidence,
        reason=reason,
    )


def detect_solution(user_message: str, ai_response: str) -> AutoSaveCandidate | None:
    """A problem in the user message answered by a solution in the response."""
    if not _contains_any(user_message.lower(), PROBLEM_CUES):
        return None
    if not _contains_any(ai_response.lower(), SOLUTION_CUES):
        return None

    return AutoSaveCandidate(
        type=MemoryType.SOLUTION,
        title=f"Solution: {_preview(user_message, 100)}",
        content=f"Problem: {user_message}\n\nSolution: {ai_response}",
        tags=["solution", "problem-solving"],
        confidence=SOLUTION_CONFIDENCE,
        reason="Conversation contains problem and solution pattern",
    )


def find_substantial_code_block(text: str) -> str | None:
    """First fenced block with more than 3 lines and more than 100 characters."""
    for block in _CODE_BLOCK_RE.findall(text):
        if len(block.split("\n")) > MIN_CODE_LINES and len(block) > MIN_CODE_CHARS:
            return block
    return None


def detect_code_snippet(ai_response: str) -> AutoSaveCandidate | None:
    """A substantial fenced code block in the response."""
    block = find_substantial_code_block(ai_response)
    if block is None:
        return None

    match = _CODE_LANGUAGE_RE.match(block)
    language = match.group(1) if match else "code"
    return AutoSaveCandidate(
        type=MemoryType.CODE_SNIPPET,
        title=f"{language[:1].upper()}{language[1:]} Code Snippet",
        content=block,
        tags=["code", language, "snippet"],
        confidence=CODE_SNIPPET_CONFIDENCE,
        reason="Response contains substantial code block",
    )


def detect_project_knowledge(
    user_message: str, ai_response: str, project_id: str | None
) -> AutoSaveCandidate | None:
    """Architecture/design/requirements talk inside a project."""
    if not project_id:
        return None
    combined = f"{user_message} {ai_response}".lower()
    if not _contains_any(combined, PROJECT_KNOWLEDGE_CUES):
        return None

    return AutoSaveCandidate(
        type=MemoryType.PROJECT_KNOWLEDGE,
        title=f"Project Knowledge: {_preview(user_message, 50)}",
        content=f"Context: {user_message}\n\nInformation: {ai_response}",
        tags=["project", "knowledge", project_id],
        confidence=PROJECT_KNOWLEDGE_CONFIDENCE,
        reason="Conversation contains project-related knowledge",
    )
