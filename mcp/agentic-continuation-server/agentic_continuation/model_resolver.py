"""
Model Resolver

Maps agents, categories and abstract tiers to a concrete provider/model pair.

Priority chain for agents (highest first):
  1. per-agent `model` override in config
  2. per-agent `tier` override, mapped through tier_defaults
  3. the agent's declared tier, mapped through tier_defaults
  4. the hard-coded "medium" tier
  5. the caller's fallback (normally the parent session's model)

A tier that maps to a bare word (the zero-config default) is not concrete and
falls through to the caller's fallback.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .agents import TIERS, get_agent, get_canonical_name
from .categories import resolve_category_config
from .host import ModelConfig

logger = logging.getLogger(__name__)


HARDCODED_TIER_DEFAULTS: dict[str, str] = {
    "low": "low",
    "medium": "medium",
    "high": "high",
}

FALLBACK_TIER = "medium"

MODEL_FORMAT = re.compile(r"^[\w.-]+/[\w.-]+$")


class ModelResolutionError(Exception):
    """No concrete model could be found and no fallback was supplied."""


@dataclass
class ModelResolution:
    model: str
    source: str
    original_tier: Optional[str] = None


def is_valid_model_format(model: str) -> bool:
    return bool(MODEL_FORMAT.match(model or ""))


def parse_model_string(model: Optional[str]) -> Optional[ModelConfig]:
    """`provider/model` to ModelConfig; bare tier words give None."""
    if not model or "/" not in model:
        return None
    provider_id, _, model_id = model.partition("/")
    if not provider_id or not model_id:
        return None
    return ModelConfig(provider_id=provider_id, model_id=model_id)


class ModelResolver:
    def __init__(self, model_mapping: Optional[dict] = None, agent_overrides: Optional[dict] = None):
        model_mapping = model_mapping or {}
        self._tier_defaults = dict(HARDCODED_TIER_DEFAULTS)
        for tier, model in (model_mapping.get("tier_defaults") or {}).items():
            if tier not in TIERS:
                logger.warning(f"Ignoring unknown tier in tier_defaults: '{tier}'")
                continue
            if not isinstance(model, str) or not model:
                logger.warning(f"Ignoring empty tier_defaults.{tier}")
                continue
            if "/" in model and not is_valid_model_format(model):
                logger.warning(f"tier_defaults.{tier} has unexpected model format: '{model}'")
            self._tier_defaults[tier] = model
        self._agent_overrides = agent_overrides or {}
        self._debug = bool(model_mapping.get("debug_logging"))

    def get_tier_defaults(self) -> dict[str, str]:
        return dict(self._tier_defaults)

    def is_tier_mapping_configured(self) -> bool:
        return any("/" in model for model in self._tier_defaults.values())

    def _candidates(self, agent_name: str) -> list[ModelResolution]:
        canonical = get_canonical_name(agent_name)
        override = self._agent_overrides.get(canonical) or self._agent_overrides.get(agent_name) or {}
        candidates = []

        if override.get("model"):
            candidates.append(ModelResolution(model=override["model"], source="per-agent-override"))

        override_tier = override.get("tier")
        if override_tier in self._tier_defaults:
            candidates.append(ModelResolution(
                model=self._tier_defaults[override_tier],
                source="per-agent-override",
                original_tier=override_tier
            ))

        agent = get_agent(agent_name)
        if agent and agent.tier in self._tier_defaults:
            candidates.append(ModelResolution(
                model=self._tier_defaults[agent.tier],
                source="tier-default",
                original_tier=agent.tier
            ))

        candidates.append(
            ModelResolution(model=self._tier_defaults[FALLBACK_TIER], source="hardcoded-fallback")
        )
        return candidates

    def resolve(self, agent_name: str) -> ModelResolution:
        """First concrete link of the chain, else the hard-coded fallback link."""
        candidates = self._candidates(agent_name)
        for candidate in candidates:
            if parse_model_string(candidate.model):
                return candidate
        return candidates[-1]

    def resolve_model_for_agent(
        self,
        agent_name: str,
        fallback: Optional[ModelConfig] = None
    ) -> Optional[ModelConfig]:
        resolution = self.resolve(agent_name)
        model = parse_model_string(resolution.model)
        if model:
            if self._debug:
                logger.info(f"Resolved {agent_name}: {resolution.model} (source: {resolution.source})")
            return model

        if self._debug:
            logger.info(
                f"No provider mapping for '{resolution.model}' ({agent_name}), "
                f"using fallback {fallback.key if fallback else 'none'}"
            )
        return fallback

    def resolve_model_for_agent_or_raise(
        self,
        agent_name: str,
        fallback: Optional[ModelConfig] = None
    ) -> ModelConfig:
        model = self.resolve_model_for_agent(agent_name, fallback)
        if model:
            return model

        message = f"Cannot resolve model for agent '{agent_name}'."
        if not self.is_tier_mapping_configured():
            message += (
                "\n\nNo tier mapping configured. Add tier_defaults to "
                "~/.config/agentic-continuation/config.yaml:\n"
                "  model_mapping:\n"
                "    tier_defaults:\n"
                "      low: provider/small-model\n"
                "      medium: provider/standard-model\n"
                "      high: provider/large-model"
            )
        else:
            message += (
                "\n\nTier mapping is configured but no fallback model is available. "
                "The parent session has probably not run yet; send a message first "
                "to establish the session model."
            )
        raise ModelResolutionError(message)

    def resolve_model_for_tier(
        self,
        tier: Optional[str],
        fallback: Optional[ModelConfig] = None
    ) -> Optional[ModelConfig]:
        model = parse_model_string(self._tier_defaults.get(tier)) if tier else None
        return model or fallback

    def resolve_model_for_category(
        self,
        category_name: str,
        fallback: Optional[ModelConfig] = None,
        user_categories: Optional[dict] = None
    ) -> Optional[ModelConfig]:
        """Explicit category model, then the category's tier, then fallback."""
        category = resolve_category_config(category_name, user_categories)
        if category is None:
            return fallback
        explicit = parse_model_string(category.model)
        if explicit:
            return explicit
        return self.resolve_model_for_tier(category.tier, fallback)
