"""
Per-model credit rates for chat messages.

Credits for one exchange = prompt_tokens * input_rate + completion_tokens * output_rate.
Stored amounts are rounded half-up to 6 decimal places; amounts shown to users
are rounded up to the next cent so cost is never under-reported.
"""
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING
from typing import Dict, Union

STORAGE_QUANTUM = Decimal("0.000001")
DISPLAY_QUANTUM = Decimal("0.01")

TOKENS_PER_CHAR = 4
DEFAULT_MODEL = "ChatGPT"

# 1 credit buys this many tokens of the model
TOKENS_PER_CREDIT: Dict[str, int] = {
    "ChatGPT": 1278,
    "Claude": 888,
    "Gemini": 42624,
    "DeepSeek": 23164,
}


@dataclass(frozen=True)
class ModelRate:
    """Credits charged per prompt (input) and completion (output) token."""
    input_rate: Decimal
    output_rate: Decimal


def _per_token(tokens_per_credit: int) -> Decimal:
    return Decimal(1) / Decimal(tokens_per_credit)


MODEL_RATES: Dict[str, ModelRate] = {
    model: ModelRate(input_rate=_per_token(tokens), output_rate=_per_token(tokens))
    for model, tokens in TOKENS_PER_CREDIT.items()
}


def is_supported_model(model: str) -> bool:
    return model in MODEL_RATES


def get_model_rate(model: str) -> ModelRate:
    """Rate for a model, falling back to the default model's rate."""
    return MODEL_RATES.get(model, MODEL_RATES[DEFAULT_MODEL])


def estimate_tokens(text: str) -> int:
    """Approximate token count (4 characters per token, rounded up)."""
    if not text:
        return 0
    return math.ceil(len(text) / TOKENS_PER_CHAR)


def calculate_message_credits(model: str, prompt_tokens: int, completion_tokens: int) -> Decimal:
    """
    Credits consumed by one chat exchange.

    Args:
        model: Model name (ChatGPT, Claude, Gemini, DeepSeek)
        prompt_tokens: Tokens sent to the model
        completion_tokens: Tokens generated by the model

    Returns:
        Credit amount rounded half-up to 6 decimal places
    """
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("Token counts must be non-negative")
    rate = get_model_rate(model)
    raw = Decimal(prompt_tokens) * rate.input_rate + Decimal(completion_tokens) * rate.output_rate
    return raw.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)


def format_credits_for_display(value: Union[Decimal, str]) -> str:
    """Round up to 2 decimal places, e.g. "0.001" -> "0.01"."""
    amount = Decimal(value) if not isinstance(value, Decimal) else value
    return str(amount.quantize(DISPLAY_QUANTUM, rounding=ROUND_CEILING))
