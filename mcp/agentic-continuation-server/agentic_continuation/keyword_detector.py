"""
Prompt classification for user messages.

Pure text functions: which continuation mode a fresh user prompt triggers or
cancels, which hint messages it earns, and whether a prompt was injected by a
driver rather than typed by the user. Fenced and inline code is stripped
before any keyword matching.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


SYNTHETIC_PREFIX = "[continuation:"

DEFAULT_GOAL = "Complete the task"

INTENSITY_KEYWORDS = ["ultrawork", "ulw", "work harder"]
SEARCH_KEYWORDS = ["deepsearch", "search", "find", "locate"]
ANALYZE_KEYWORDS = ["analyze", "analyse", "investigate"]

FENCED_CODE = re.compile(r"```[\s\S]*?```")
INLINE_CODE = re.compile(r"`[^`\n]+`")


class TriggerKind(str, Enum):
    NONE = "none"
    GOAL_LOOP = "goal_loop"
    GOAL_LOOP_INTENSE = "goal_loop_intense"
    CANCEL_GOAL_LOOP = "cancel_goal_loop"
    PIPELINE = "pipeline"
    CANCEL_PIPELINE = "cancel_pipeline"
    QA_CYCLE = "qa_cycle"
    CANCEL_QA_CYCLE = "cancel_qa_cycle"
    WORK_INTENSITY = "work_intensity"
    CANCEL_WORK_INTENSITY = "cancel_work_intensity"


@dataclass(frozen=True)
class TriggerMatch:
    kind: TriggerKind
    argument: str = ""


@dataclass(frozen=True)
class KeywordHint:
    type: str
    message: str


CANCEL_COMMANDS = [
    ("/cancel-goal-loop", TriggerKind.CANCEL_GOAL_LOOP),
    ("/cancel-pipeline", TriggerKind.CANCEL_PIPELINE),
    ("/cancel-qa-cycle", TriggerKind.CANCEL_QA_CYCLE),
    ("/cancel-intensity", TriggerKind.CANCEL_WORK_INTENSITY),
]

GOAL_LOOP_INTENSE_COMMAND = re.compile(r"/goal-loop-intense\b\s*(.*)", re.DOTALL)
GOAL_LOOP_COMMAND = re.compile(r"/goal-loop\b(?!-)\s*(.*)", re.DOTALL)
PIPELINE_COMMAND = re.compile(r"(?:/pipeline\b|^\s*pipeline:)\s*(.*)", re.DOTALL | re.IGNORECASE | re.MULTILINE)
QA_CYCLE_COMMAND = re.compile(r"(?:/qa-cycle\b|^\s*qa-cycle:)\s*(.*)", re.DOTALL | re.IGNORECASE | re.MULTILINE)

SEARCH_HINT = (
    "[search-mode]\n\n"
    "Search effort is raised for this request.\n"
    "- Run the explore and librarian agents in parallel\n"
    "- Cover the codebase and external references before narrowing down"
)

ANALYZE_HINT = (
    "[analyze-mode]\n\n"
    "Deep analysis is requested.\n"
    "- Gather full context before drawing conclusions\n"
    "- Consult the oracle agent on architectural questions"
)


def strip_code(text: str) -> str:
    return INLINE_CODE.sub("", FENCED_CODE.sub("", text))


def _contains_keyword(text: str, keywords: list[str]) -> bool:
    return any(re.search(rf"\b{re.escape(k)}\b", text) for k in keywords)


def _clean_argument(argument: str) -> str:
    return argument.strip().strip("\"'").strip()


def classify_prompt(text: str) -> TriggerMatch:
    """Classify a fresh user prompt. Cancel commands win over start commands."""
    clean = strip_code(text or "")
    lowered = clean.lower()

    for command, kind in CANCEL_COMMANDS:
        if command in lowered:
            return TriggerMatch(kind)

    match = GOAL_LOOP_INTENSE_COMMAND.search(clean)
    if match:
        return TriggerMatch(TriggerKind.GOAL_LOOP_INTENSE, _clean_argument(match.group(1)) or DEFAULT_GOAL)

    match = GOAL_LOOP_COMMAND.search(clean)
    if match:
        argument = _clean_argument(match.group(1)) or DEFAULT_GOAL
        if _contains_keyword(lowered, INTENSITY_KEYWORDS):
            return TriggerMatch(TriggerKind.GOAL_LOOP_INTENSE, argument)
        return TriggerMatch(TriggerKind.GOAL_LOOP, argument)

    match = PIPELINE_COMMAND.search(clean)
    if match:
        return TriggerMatch(TriggerKind.PIPELINE, _clean_argument(match.group(1)) or DEFAULT_GOAL)

    match = QA_CYCLE_COMMAND.search(clean)
    if match:
        return TriggerMatch(TriggerKind.QA_CYCLE, _clean_argument(match.group(1)) or "Make build, lint and tests pass")

    if _contains_keyword(lowered, INTENSITY_KEYWORDS):
        return TriggerMatch(TriggerKind.WORK_INTENSITY, clean.strip())

    return TriggerMatch(TriggerKind.NONE)


def detect_keyword_hints(text: str) -> list[KeywordHint]:
    lowered = strip_code(text or "").lower()
    hints = []
    if _contains_keyword(lowered, SEARCH_KEYWORDS):
        hints.append(KeywordHint("search", SEARCH_HINT))
    if _contains_keyword(lowered, ANALYZE_KEYWORDS):
        hints.append(KeywordHint("analyze", ANALYZE_HINT))
    return hints


def mark_synthetic(driver: str, text: str) -> str:
    return f"{SYNTHETIC_PREFIX}{driver}]\n{text}"


def is_synthetic_prompt(text: Optional[str]) -> bool:
    return bool(text) and text.lstrip().startswith(SYNTHETIC_PREFIX)
