"""Tests for settings persistence and the settings command set."""
from __future__ import annotations

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from prioritizer.config import AppConfig
from prioritizer.models import Base
from prioritizer.overrides import audit_log
from prioritizer.settings import (
    COMMAND_TYPES,
    SETTINGS_KEY,
    _HANDLERS,
    ResetSettings,
    SetFramework,
    apply_command,
    current_settings_hash,
    load_settings,
    mask_key,
    parse_command,
    resolve_api_keys,
    set_api_key,
)
from prioritizer.store import DocumentStore


@pytest.fixture()
def store():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    sess = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)()
    try:
        yield DocumentStore(sess)
    finally:
        sess.close()


class TestLoadSettings:
    def test_defaults(self, store):
        settings = load_settings(store)
        assert settings.active_framework == "weighted"
        assert settings.weights["mature"]["revenueImpact"] == 0.30
        assert settings.weights["new"]["capabilityGap"] == 0.30
        assert set(settings.tier_multipliers.values()) == {1.0}
        assert settings.ai_model.default_model == "anthropic"

    def test_stored_values_merge_over_defaults(self, store):
        store.save(SETTINGS_KEY, {"weights": {"mature": {"effort": 0.5}}, "ai_model": {"temperature": 0.7}})
        settings = load_settings(store)
        assert settings.weights["mature"]["effort"] == 0.5
        assert settings.weights["mature"]["revenueImpact"] == 0.30
        assert settings.ai_model.temperature == 0.7
        assert settings.ai_model.openai_model == "gpt-4o"


class TestParseCommand:
    def test_dispatches_on_action(self):
        assert isinstance(parse_command({"action": "setFramework", "framework": "rice"}), SetFramework)
        assert isinstance(parse_command({"action": "reset"}), ResetSettings)

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            parse_command({"action": "setEverything"})

    def test_invalid_payload(self):
        with pytest.raises(ValidationError):
            parse_command({"action": "setFramework", "framework": "kano"})
        with pytest.raises(ValidationError):
            parse_command({"action": "setAIModel", "temperature": 5})

    def test_every_command_has_a_handler(self):
        assert set(COMMAND_TYPES) == set(_HANDLERS)


class TestApplyCommand:
    def test_set_framework_persists_and_audits(self, store):
        settings = apply_command(store, parse_command({"action": "setFramework", "framework": "ice"}))
        assert settings.active_framework == "ice"
        assert load_settings(store).active_framework == "ice"
        (entry,) = audit_log(store)
        assert entry["action"] == "framework_change"
        assert (entry["old_value"], entry["new_value"]) == ("weighted", "ice")

    def test_same_framework_not_audited(self, store):
        apply_command(store, parse_command({"action": "setFramework", "framework": "weighted"}))
        assert audit_log(store) == []

    def test_set_ai_model_partial(self, store):
        apply_command(store, parse_command({"action": "setAIModel", "enabled": "openai", "temperature": 0.1}))
        ai = load_settings(store).ai_model
        assert ai.enabled == "openai"
        assert ai.temperature == 0.1
        assert ai.anthropic_model == "claude-sonnet-4-20250514"

    def test_weights_merge_per_stage(self, store):
        apply_command(store, parse_command({"action": "setMatureWeights", "weights": {"effort": 0.2}}))
        apply_command(store, parse_command({"action": "setNewProductWeights", "weights": {"capabilityGap": 0.4}}))
        weights = load_settings(store).weights
        assert weights["mature"]["effort"] == 0.2
        assert weights["mature"]["revenueImpact"] == 0.30
        assert weights["new"]["capabilityGap"] == 0.4

    def test_tier_multipliers(self, store):
        apply_command(store, parse_command({"action": "setTierMultipliers", "multipliers": {"C1": 1.5}}))
        tiers = load_settings(store).tier_multipliers
        assert tiers["C1"] == 1.5
        assert tiers["C5"] == 1.0

    def test_project_mapping_set_and_remove(self, store):
        apply_command(store, parse_command({"action": "setProjectMapping", "project_id": "p1", "product": "byoa"}))
        assert load_settings(store).project_mappings == {"p1": "byoa"}
        apply_command(store, parse_command({"action": "setProjectMapping", "project_id": "p1"}))
        assert load_settings(store).project_mappings == {}

    def test_excluded_projects_deduplicated(self, store):
        apply_command(store, parse_command({"action": "setExcludedProjects", "project_ids": ["a", "b", "a"]}))
        assert load_settings(store).excluded_projects == ["a", "b"]

    def test_prompt_config_changes_hash(self, store):
        before = current_settings_hash(load_settings(store))
        apply_command(store, parse_command({
            "action": "setPromptConfig", "prompt_config": {"known_gaps": ["SCIM provisioning"]},
        }))
        settings = load_settings(store)
        assert settings.prompt_config.known_gaps == ["SCIM provisioning"]
        assert settings.prompt_config.competitors
        assert current_settings_hash(settings) != before

    def test_reset(self, store):
        apply_command(store, parse_command({"action": "setFramework", "framework": "moscow"}))
        apply_command(store, parse_command({"action": "reset"}))
        assert load_settings(store).active_framework == "weighted"


class TestApiKeys:
    def test_stored_key_wins_over_environment(self, store):
        config = AppConfig(openai_api_key="env-openai", anthropic_api_key="", linear_api_key="env-linear")
        set_api_key(store, "openai", "stored-openai")
        keys = resolve_api_keys(store, config)
        assert keys == {"openai": "stored-openai", "anthropic": "", "linear": "env-linear"}

    def test_remove_key(self, store):
        config = AppConfig(openai_api_key="", anthropic_api_key="", linear_api_key="")
        set_api_key(store, "anthropic", "sk-ant")
        set_api_key(store, "anthropic", None)
        assert resolve_api_keys(store, config)["anthropic"] == ""

    def test_unknown_provider(self, store):
        with pytest.raises(ValueError):
            set_api_key(store, "gemini", "x")

    def test_mask_key(self):
        assert mask_key("sk-abcdefghijkl") == "sk-a...ijkl"
        assert mask_key("short") == "****"
        assert mask_key("") == ""
