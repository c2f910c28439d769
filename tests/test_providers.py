"""Tests for provider helpers and the provider registry."""

import json

import pytest

from conftest import MockHealthStore, MockInferenceProvider, sample_analysis, sample_analysis_dict
from openmeal.errors import AnalysisFailure
from openmeal.providers import (
    HealthStore,
    InferenceProvider,
    ProviderRegistry,
    extract_json_object,
    get_registry,
    parse_analysis,
)
from openmeal.providers.base import before_after_prompt, correction_prompt, image_prompt, text_prompt
from openmeal.providers.gemini import NullInference
from openmeal.providers.health import HttpHealthStore


class TestExtractJson:
    """Pulling the analysis object out of model replies."""

    def test_plain_object(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_fenced_with_prose(self):
        text = 'Here you go:\n```json\n{"title": "Soup",\n "n": {"x": 2}}\n```\nEnjoy!'
        assert extract_json_object(text) == {"title": "Soup", "n": {"x": 2}}

    @pytest.mark.parametrize("text", [None, "", "no json here", "{broken", "{'single': 'quotes'}"])
    def test_failures(self, text):
        with pytest.raises(AnalysisFailure):
            extract_json_object(text)

    def test_parse_analysis(self):
        analysis = parse_analysis("```json\n" + json.dumps(sample_analysis_dict()) + "\n```")
        assert analysis == sample_analysis()

    def test_parse_analysis_without_totals(self):
        with pytest.raises(AnalysisFailure):
            parse_analysis('{"title": "Soup"}')


class TestPrompts:
    def test_comment_is_included_when_given(self):
        assert "extra cheese" in image_prompt("extra cheese")
        assert "extra cheese" in before_after_prompt("extra cheese")
        assert "oatmeal" in text_prompt("  oatmeal  ")

    def test_correction_prompt_carries_current_analysis(self):
        prompt = correction_prompt(sample_analysis(), "it was tofu")
        assert "Grilled Chicken Salad" in prompt
        assert "it was tofu" in prompt


class TestProtocols:
    def test_mocks_satisfy_protocols(self):
        assert isinstance(MockInferenceProvider(), InferenceProvider)
        assert isinstance(NullInference(), InferenceProvider)
        assert isinstance(MockHealthStore(), HealthStore)


class TestRegistry:
    def test_builtin_providers_are_registered(self):
        registry = get_registry()
        assert {"gemini", "none"} <= set(registry.list_inference_providers())
        assert "http" in registry.list_health_providers()

    def test_none_health_is_no_integration(self):
        assert get_registry().create_health("none") is None

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown inference provider"):
            get_registry().create_inference("nope")

    def test_constructor_errors_become_runtime_errors(self):
        registry = ProviderRegistry()
        registry.register_health("http", HttpHealthStore)
        with pytest.raises(RuntimeError):
            registry.create_health("http", {"api_url": "http://remote.example.com", "api_key": "k"})

    def test_custom_registration(self):
        registry = ProviderRegistry()
        registry.register_inference("mock", MockInferenceProvider)
        assert isinstance(registry.create_inference("mock"), MockInferenceProvider)

    @pytest.mark.asyncio
    async def test_null_inference_always_fails(self):
        with pytest.raises(AnalysisFailure):
            await NullInference().analyze_text("soup")
