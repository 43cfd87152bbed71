"""
Tests for model_resolver.py - tier mapping, overrides and fallback.

Run with: pytest tests/test_model_resolver.py -v
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agentic_continuation.host import ModelConfig
from agentic_continuation.model_resolver import (
    ModelResolutionError,
    ModelResolver,
    is_valid_model_format,
    parse_model_string,
)

PARENT = ModelConfig("providerX", "modelY")

TIER_MAPPING = {
    "tier_defaults": {
        "low": "anthropic/haiku",
        "medium": "anthropic/sonnet",
        "high": "anthropic/opus"
    }
}


class TestParsing:
    def test_valid_format(self):
        assert is_valid_model_format("anthropic/claude-3.5")
        assert not is_valid_model_format("sonnet")
        assert not is_valid_model_format("a/b/c")

    def test_parse(self):
        assert parse_model_string("openai/gpt-4o") == ModelConfig("openai", "gpt-4o")
        assert parse_model_string("medium") is None
        assert parse_model_string(None) is None
        assert parse_model_string("/x") is None


class TestAgentResolution:
    @pytest.mark.parametrize("agent,expected", [
        ("explore", "anthropic/haiku"),
        ("executor", "anthropic/sonnet"),
        ("oracle", "anthropic/opus"),
    ])
    def test_declared_tier_mapped(self, agent, expected):
        resolver = ModelResolver(TIER_MAPPING)
        assert resolver.resolve_model_for_agent(agent, PARENT).key == expected

    def test_alias_uses_target_tier(self):
        resolver = ModelResolver(TIER_MAPPING)
        assert resolver.resolve_model_for_agent("architect").key == "anthropic/opus"

    def test_bare_word_falls_back_to_parent(self):
        resolver = ModelResolver()
        assert resolver.resolve_model_for_agent("oracle", PARENT) == PARENT

    def test_partial_mapping_falls_through_to_fallback_tier(self):
        resolver = ModelResolver({"tier_defaults": {"medium": "anthropic/sonnet"}})
        # oracle is high-tier, high is unmapped, medium is the global fallback tier
        assert resolver.resolve_model_for_agent("oracle", PARENT).key == "anthropic/sonnet"

    def test_per_agent_model_wins(self):
        resolver = ModelResolver(TIER_MAPPING, {"oracle": {"model": "openai/o3", "tier": "low"}})
        resolution = resolver.resolve("oracle")
        assert resolution.model == "openai/o3"
        assert resolution.source == "per-agent-override"

    def test_per_agent_tier_override(self):
        resolver = ModelResolver(TIER_MAPPING, {"oracle": {"tier": "low"}})
        resolution = resolver.resolve("oracle")
        assert resolution.model == "anthropic/haiku"
        assert resolution.original_tier == "low"

    def test_unknown_tier_in_mapping_ignored(self):
        resolver = ModelResolver({"tier_defaults": {"ultra": "x/y"}})
        assert "ultra" not in resolver.get_tier_defaults()
        assert resolver.is_tier_mapping_configured() is False

    def test_empty_tier_value_keeps_default(self):
        resolver = ModelResolver({"tier_defaults": {"low": None, "high": "anthropic/opus"}})
        assert resolver.get_tier_defaults()["low"] == "low"
        assert resolver.resolve_model_for_agent("explore", PARENT) == PARENT

    def test_no_model_no_fallback_is_none(self):
        assert ModelResolver().resolve_model_for_agent("oracle") is None


class TestResolveOrRaise:
    def test_returns_fallback_with_zero_config(self):
        assert ModelResolver().resolve_model_for_agent_or_raise("executor", PARENT) == PARENT

    def test_raises_with_config_hint(self):
        with pytest.raises(ModelResolutionError, match="No tier mapping configured"):
            ModelResolver().resolve_model_for_agent_or_raise("executor")

    def test_raises_with_session_hint(self):
        resolver = ModelResolver({"tier_defaults": {"high": "anthropic/opus"}})
        with pytest.raises(ModelResolutionError, match="send a message first"):
            resolver.resolve_model_for_agent_or_raise("explore")


class TestCategoryResolution:
    def test_category_tier(self):
        resolver = ModelResolver(TIER_MAPPING)
        assert resolver.resolve_model_for_category("ultrabrain", PARENT).key == "anthropic/opus"

    def test_category_explicit_model(self):
        resolver = ModelResolver(TIER_MAPPING)
        model = resolver.resolve_model_for_category("quick", PARENT, {"quick": {"model": "groq/llama"}})
        assert model.key == "groq/llama"

    def test_category_zero_config_uses_parent(self):
        assert ModelResolver().resolve_model_for_category("quick", PARENT) == PARENT

    def test_unknown_category_uses_fallback(self):
        assert ModelResolver(TIER_MAPPING).resolve_model_for_category("nope", PARENT) == PARENT

    def test_tier_lookup(self):
        resolver = ModelResolver(TIER_MAPPING)
        assert resolver.resolve_model_for_tier("low").key == "anthropic/haiku"
        assert resolver.resolve_model_for_tier(None, PARENT) == PARENT
