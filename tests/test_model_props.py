from decimal import Decimal

import pytest

from multichat.model_props import (
    estimate_credit_cost,
    estimate_precheck_cost,
    load_pricing_config,
    parse_model_name,
)


def test_precheck_splits_tokens_between_prompt_and_completion():
    assert estimate_precheck_cost("gemini-2.5-flash-lite", 1000) == Decimal("1.5000")


def test_nsfw_is_metered_higher():
    assert estimate_precheck_cost("gemini-2.5-flash-lite", 1000, is_nsfw=True) == Decimal("2.2500")


def test_openai_service_tier_comes_from_the_suffix():
    assert estimate_credit_cost("gpt-5.1", 1000, 0) == Decimal("6.5000")
    assert estimate_credit_cost("gpt-5.1_fast-flex", 1000, 0) == Decimal("3.2500")


def test_vertex_long_band_switches_on_prompt_size():
    assert estimate_credit_cost("gemini-2.5-pro", 1000, 0) == Decimal("6.5000")
    assert estimate_credit_cost("gemini-2.5-pro", 300000, 0) == Decimal("3900.0000")


def test_unknown_model_is_rejected():
    with pytest.raises(ValueError):
        estimate_precheck_cost("mystery-model", 100)


def test_parse_model_name():
    assert parse_model_name("gemini-2.5-flash") == ("gemini-2.5-flash", {})
    base, params = parse_model_name("gpt-5.1_standard-flex")
    assert base == "gpt-5.1"
    assert params == {"text": {"verbosity": "low"}, "reasoning": {"effort": "low"}, "service_tier": "flex"}

    with pytest.raises(ValueError):
        parse_model_name("gpt-5.1_turbo")
    with pytest.raises(ValueError):
        parse_model_name("  ")


def test_pricing_config_requires_all_sections(tmp_path):
    path = tmp_path / "pricing.jsonc"
    path.write_text('{\n  // no multipliers\n  "MODEL_BASE_PRICE_TABLE": {}\n}\n', encoding="utf-8")
    with pytest.raises(ValueError):
        load_pricing_config(path)

    with pytest.raises(FileNotFoundError):
        load_pricing_config(tmp_path / "missing.jsonc")
