"""
Delegation categories.

A category is an alternative to naming an agent: it picks a tier and adds a
behavioural prompt. Users may override built-in categories field by field or
define new ones under the `categories` config section.
"""

from dataclasses import dataclass
from typing import Optional


BUILTIN_CATEGORIES: dict[str, dict] = {
    "visual-engineering": {
        "tier": "medium",
        "description": "Frontend, UI and visual design work",
        "prompt_append": (
            "<Category_Context>\nYou are working on visual/UI tasks. Make deliberate aesthetic "
            "choices, keep layouts responsive and reuse the project's design tokens.\n</Category_Context>"
        ),
    },
    "ultrabrain": {
        "tier": "high",
        "description": "Hard architecture problems and deep reasoning",
        "prompt_append": (
            "<Category_Context>\nYou are working on complex architecture or reasoning tasks. Prefer "
            "the simplest design that meets the requirements, then give a numbered action plan and "
            "the main risks.\n</Category_Context>"
        ),
    },
    "artistry": {
        "tier": "high",
        "description": "Highly creative work that rewards unconventional ideas",
        "prompt_append": (
            "<Category_Context>\nYou are working on creative tasks. Offer several bold options "
            "before settling on one.\n</Category_Context>"
        ),
    },
    "quick": {
        "tier": "low",
        "description": "Small, well-specified changes",
        "prompt_append": (
            "<Category_Context>\nYou are working on a small task. Implement the minimum that "
            "satisfies it with no extra abstractions.\n</Category_Context>\n\n"
            "<Caller_Warning>\nThis category runs on a low-tier model. State every required step, "
            "every forbidden action and the exact expected output.\n</Caller_Warning>"
        ),
    },
    "unspecified-low": {
        "tier": "medium",
        "description": "Moderate work that fits no other category",
        "prompt_append": (
            "<Category_Context>\nThe task fits no specific category and is contained to a few "
            "files. Keep scope tight.\n</Category_Context>"
        ),
    },
    "unspecified-high": {
        "tier": "high",
        "description": "Substantial cross-cutting work that fits no other category",
        "prompt_append": (
            "<Category_Context>\nThe task fits no specific category and spans several modules. "
            "Plan the change before editing and coordinate across the affected areas.\n</Category_Context>"
        ),
    },
    "writing": {
        "tier": "medium",
        "description": "Documentation and prose",
        "prompt_append": (
            "<Category_Context>\nYou are writing documentation or prose. Know the audience, "
            "structure the text and edit for clarity.\n</Category_Context>"
        ),
    },
}


@dataclass
class ResolvedCategory:
    name: str
    tier: Optional[str]
    model: Optional[str]
    description: str
    prompt_append: str


def resolve_category_config(name: str, user_categories: Optional[dict] = None) -> Optional[ResolvedCategory]:
    """Merge a user override over the built-in category, or None if neither exists."""
    builtin = BUILTIN_CATEGORIES.get(name)
    user = (user_categories or {}).get(name)
    if builtin is None and user is None:
        return None

    builtin = builtin or {}
    user = user or {}

    prompt_append = builtin.get("prompt_append", "")
    if user.get("prompt_append"):
        prompt_append = (
            f"{prompt_append}\n\n{user['prompt_append']}" if prompt_append else user["prompt_append"]
        )

    return ResolvedCategory(
        name=name,
        tier=user.get("tier", builtin.get("tier")),
        model=user.get("model"),
        description=user.get("description") or builtin.get("description") or "Category",
        prompt_append=prompt_append,
    )


def get_available_categories(user_categories: Optional[dict] = None) -> list[str]:
    names = list(BUILTIN_CATEGORIES)
    for name in user_categories or {}:
        if name not in BUILTIN_CATEGORIES:
            names.append(name)
    return names


def build_category_prompt(category: ResolvedCategory, prompt: str) -> str:
    if not category.prompt_append:
        return prompt
    return f"{category.prompt_append}\n\n---\n\n{prompt}"
