"""
Built-in sub-agent definitions available for delegation.

Each agent declares an abstract tier (low/medium/high) that the model resolver
maps to a concrete model, and read-only agents are never granted write tools.
"""

from dataclasses import dataclass, field
from typing import Optional


TIERS = ["low", "medium", "high"]

RESTRICTED_TOOLS_FOR_READ_ONLY = ["Write", "Edit"]


@dataclass(frozen=True)
class AgentDefinition:
    name: str
    description: str
    system_prompt: str
    tier: Optional[str] = None
    read_only: bool = False
    tools: tuple[str, ...] = field(default_factory=tuple)


AGENTS: dict[str, AgentDefinition] = {
    "oracle": AgentDefinition(
        name="oracle",
        description="Senior advisor for architecture decisions, debugging strategy and code review",
        tier="high",
        read_only=True,
        system_prompt=(
            "You are Oracle, an engineering advisor.\n\n"
            "Analyse the problem step by step, weigh alternatives and give one concrete "
            "recommendation with its risks. You advise only: you do not edit files or run commands."
        ),
    ),
    "librarian": AgentDefinition(
        name="librarian",
        description="Researches documentation, external references and implementation examples",
        tier="medium",
        tools=("web_search", "grep_app"),
        system_prompt=(
            "You are Librarian, a documentation researcher.\n\n"
            "Start from official documentation, back it with real open-source usage and cite every "
            "source you rely on."
        ),
    ),
    "explore": AgentDefinition(
        name="explore",
        description="Fast codebase search for files, symbols and structure",
        tier="low",
        read_only=True,
        tools=("glob", "grep", "read"),
        system_prompt=(
            "You are Explore, a codebase search specialist.\n\n"
            "Find what was asked for quickly and report file paths with the relevant snippets."
        ),
    ),
    "frontend-engineer": AgentDefinition(
        name="frontend-engineer",
        description="Builds and polishes user interfaces without needing mockups",
        tier="medium",
        system_prompt=(
            "You are a frontend engineer with a designer's eye.\n\n"
            "Follow the existing design system, keep markup accessible and ship production-ready UI code."
        ),
    ),
    "document-writer": AgentDefinition(
        name="document-writer",
        description="Writes READMEs, API references and guides",
        tier="low",
        system_prompt=(
            "You are a technical writer.\n\n"
            "Write for developers, include working examples and match the project's existing docs."
        ),
    ),
    "executor": AgentDefinition(
        name="executor",
        description="Implements a well-defined task directly without further delegation",
        tier="medium",
        system_prompt=(
            "You are Executor, a focused implementer.\n\n"
            "Do exactly the assigned task, follow existing code patterns, verify your change and "
            "never delegate to other agents."
        ),
    ),
    "qa-tester": AgentDefinition(
        name="qa-tester",
        description="Exercises CLIs and services interactively and reports failures",
        tier="medium",
        tools=("interactive_bash",),
        system_prompt=(
            "You are a QA tester.\n\n"
            "Run the software, check its output against expectations, probe edge cases and write "
            "down exact reproduction steps for every failure."
        ),
    ),
}

AGENT_ALIASES: dict[str, str] = {
    "architect": "oracle",
    "researcher": "librarian",
    "designer": "frontend-engineer",
    "writer": "document-writer",
}


def is_alias(name: str) -> bool:
    return name in AGENT_ALIASES


def get_canonical_name(name: str) -> str:
    return AGENT_ALIASES.get(name, name)


def get_agent(name: str) -> Optional[AgentDefinition]:
    return AGENTS.get(get_canonical_name(name))


def list_agent_names(include_aliases: bool = True, overrides: Optional[dict] = None) -> list[str]:
    """Agent names offered for delegation, minus any disabled in configuration."""
    overrides = overrides or {}
    names = list(AGENTS)
    if include_aliases:
        names.extend(AGENT_ALIASES)
    return [
        n for n in names
        if not (overrides.get(get_canonical_name(n)) or {}).get("disable")
    ]


def get_restricted_tools(name: str) -> list[str]:
    agent = get_agent(name)
    if agent is None or not agent.read_only:
        return []
    return list(RESTRICTED_TOOLS_FOR_READ_ONLY)


def build_agent_prompt(agent: AgentDefinition, prompt: str, override: Optional[dict] = None) -> str:
    system_prompt = agent.system_prompt
    append = (override or {}).get("prompt_append")
    if append:
        system_prompt = f"{system_prompt}\n\n{append}"
    return f"{system_prompt}\n\n---\n\n{prompt}"
