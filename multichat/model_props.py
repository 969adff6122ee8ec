# multichat/model_props.py
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple
from pathlib import Path
import os
import threading
import commentjson

from dotenv import load_dotenv
load_dotenv()

_DEFAULT_PRICING_PATH = Path(__file__).with_name("llm_pricing.jsonc")

_pricing_lock = threading.Lock()
_PRICING_CONFIG: Dict[str, Any] | None = None


def load_pricing_config(path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load pricing + multipliers from a JSON-with-comments file.
    Fails fast if the file or required top-level keys are missing.
    """
    cfg_path = Path(path or os.getenv("LLM_PRICING_ENV_PATH") or _DEFAULT_PRICING_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(
            f"LLM pricing config file not found at '{cfg_path}'. "
        )

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    for key in ("MODEL_BASE_PRICE_TABLE", "SINGLE_MULTIPLIERS", "CONTENT_RATING_MULTIPLIERS", "PRECHECK"):
        if key not in data or not isinstance(data[key], dict):
            raise ValueError(f"Pricing config missing or invalid key: {key}")

    return data


def pricing_config() -> Dict[str, Any]:
    global _PRICING_CONFIG
    with _pricing_lock:
        if _PRICING_CONFIG is None:
            _PRICING_CONFIG = load_pricing_config()
        return _PRICING_CONFIG


def set_pricing_config(config: Dict[str, Any] | None) -> None:
    """Swap the active config (None reloads from disk on next use)."""
    global _PRICING_CONFIG
    with _pricing_lock:
        _PRICING_CONFIG = config


#! PRICING API

_CREDIT_QUANTUM = Decimal("0.0001")


def _per_million(rate: float, tokens: int) -> Decimal:
    if rate <= 0.0 or tokens <= 0:
        return Decimal("0")
    return Decimal(str(rate)) * Decimal(tokens) / Decimal(1_000_000)


def _rates_for(llm_model_name: str, prompt_tokens: int, service_tier: str | None) -> Tuple[float, float]:
    table = pricing_config()["MODEL_BASE_PRICE_TABLE"]
    pricing = table.get(llm_model_name)
    if pricing is None:
        raise ValueError(f"Missing Price Table for Model {llm_model_name}")

    # !OpenAI Models
    if is_openai_model(llm_model_name):
        pricing = pricing.get(service_tier or "default", pricing.get("default", None))
        if not pricing:
            raise ValueError(f"Missing Price Tiers for GPT Model {llm_model_name}")
        return pricing["input_short"], pricing["output_short"]
    # !VertexAI Models
    threshold = pricing.get("long_threshold_tokens", None)
    if threshold is not None and pricing.get("input_long", None) is not None and prompt_tokens > threshold:
        out_long = pricing.get("output_long")
        return pricing["input_long"], out_long if out_long is not None else pricing["output_short"]
    return pricing["input_short"], pricing["output_short"]


def get_expense_multipliers(llm_model_name: str) -> Tuple[float, float]:
    mult = pricing_config()["SINGLE_MULTIPLIERS"].get(llm_model_name, None)
    if mult is None or len(mult) < 2:
        raise ValueError(f"get_expense_multipliers: model not found: {llm_model_name}")
    return float(mult[0]), float(mult[1])  # prompt_tokens, completion_tokens


def content_rating_multiplier(is_nsfw: bool) -> Decimal:
    ratings = pricing_config()["CONTENT_RATING_MULTIPLIERS"]
    return Decimal(str(ratings.get("nsfw" if is_nsfw else "sfw", 1.0)))


def estimate_credit_cost(
    llm_model_name: str,
    prompt_tokens: int,
    completion_tokens: int,
    *,
    is_nsfw: bool = False,
) -> Decimal:
    """
    Credits for a single request.

    - llm_model_name may carry OpenAI suffixes ('gpt-5.1_fast_flex'); the base name selects the price table
      and the parsed service tier selects the OpenAI band.
    - Vertex models with a long band switch on prompt_tokens.
    - Per-model margins from SINGLE_MULTIPLIERS and the content rating multiplier are applied last.
    """
    base_name, params = parse_model_name(llm_model_name)
    service_tier = params.get("service_tier") if params else None
    in_rate, out_rate = _rates_for(base_name, prompt_tokens, service_tier)
    m_in, m_out = get_expense_multipliers(base_name)

    price = _per_million(in_rate, prompt_tokens) * Decimal(str(m_in))
    price += _per_million(out_rate, completion_tokens) * Decimal(str(m_out))
    price *= content_rating_multiplier(is_nsfw)
    return price.quantize(_CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


def estimate_precheck_cost(llm_model_name: str, tokens: int, *, is_nsfw: bool = False) -> Decimal:
    """Balance pre-check for one response, before any LLM call is made."""
    share = float(pricing_config()["PRECHECK"].get("completion_share", 0.5))
    completion = int(tokens * share)
    return estimate_credit_cost(llm_model_name, tokens - completion, completion, is_nsfw=is_nsfw)


# !######################################################################################################
#! UTILS
# !######################################################################################################

def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "gpt-4", "gpt-5")
    return any(model_name.startswith(p) for p in prefixes)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-5.1_low_low'
        - 'gpt-5.1_standard'
        - 'gpt-5.1_fast-flex'
    into (base_model, openai_params).
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed. ")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None

    verbosity_tokens = {"low", "medium", "high"}
    reasoning_tokens = {"none", "minimal", "low", "medium", "high", "xhigh"}
    service_tier_tokens = {"auto", "default", "flex", "priority"}

    wildcards: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]] = {
        "standard": ("low", "low", None),
        "std": ("low", "low", None),
        "fast": ("low", "none", None),
        "deep": ("medium", "high", None),
        "standard-flex": ("low", "low", "flex"),
        "fast-flex": ("low", "none", "flex"),
        "standard-priority": ("low", "low", "priority"),
    }

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue

        if t in wildcards:
            w_verb, w_reason, w_tier = wildcards[t]
            if verbosity is None and w_verb is not None:
                verbosity = w_verb
            if reasoning_effort is None and w_reason is not None:
                reasoning_effort = w_reason
            if service_tier is None and w_tier is not None:
                service_tier = w_tier
            continue

        if verbosity is None and t in verbosity_tokens:
            verbosity = t
            continue

        if reasoning_effort is None and t in reasoning_tokens:
            reasoning_effort = t
            continue

        if service_tier is None and t in service_tier_tokens:
            service_tier = t
            continue

        unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'. ")

    params: Dict[str, Any] = {}
    if verbosity is not None:
        params.setdefault("text", {})["verbosity"] = verbosity
    if reasoning_effort is not None:
        params.setdefault("reasoning", {})["effort"] = reasoning_effort
    params["service_tier"] = service_tier if service_tier is not None else "default"

    return base, params
