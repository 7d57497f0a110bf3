from dataclasses import dataclass

from burnwatch.models import TokenBreakdown, TokenCategory, UsageEntry

_PER_MILLION = 1_000_000


@dataclass(frozen=True, slots=True)
class ModelPricing:
    # all prices in USD per million tokens
    input: "float"
    output: "float"
    cache_write: "float"
    cache_read: "float"


SONNET = ModelPricing(input=3.00, output=15.00, cache_write=3.75, cache_read=0.30)
OPUS = ModelPricing(input=15.00, output=75.00, cache_write=18.75, cache_read=1.50)
HAIKU_3_5 = ModelPricing(input=1.00, output=5.00, cache_write=1.25, cache_read=0.10)
HAIKU_3 = ModelPricing(input=0.25, output=1.25, cache_write=0.30, cache_read=0.03)

MODEL_PRICING: "dict[str, ModelPricing]" = {
    "claude-3-5-sonnet-20241022": SONNET,
    "claude-3-5-sonnet-20240620": SONNET,
    "claude-3-5-haiku-20241022": HAIKU_3_5,
    "claude-3-opus-20240229": OPUS,
    "claude-3-sonnet-20240229": SONNET,
    "claude-3-haiku-20240307": HAIKU_3,
    "claude-sonnet-4-20250514": SONNET,
    "claude-opus-4-20250514": OPUS,
}

# each tuple is (substring, pricing), checked in order for unknown model ids
_FAMILY_FALLBACKS: "list[tuple[str, ModelPricing]]" = [
    ("opus", OPUS),
    ("haiku", HAIKU_3_5),
    ("sonnet", SONNET),
]

DEFAULT_PRICING = SONNET


def get_pricing(model: "str") -> "ModelPricing":
    """
    resolves pricing by exact model id, then by model family,
    falling back to Sonnet pricing.
    """
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]

    lowered = model.lower()
    for family, pricing in _FAMILY_FALLBACKS:
        if family in lowered:
            return pricing

    return DEFAULT_PRICING


def entry_cost(
    model: "str",
    input_tokens: "int",
    output_tokens: "int",
    cache_creation_tokens: "int" = 0,
    cache_read_tokens: "int" = 0,
) -> "float":
    pricing = get_pricing(model)
    return (
        input_tokens * pricing.input
        + output_tokens * pricing.output
        + cache_creation_tokens * pricing.cache_write
        + cache_read_tokens * pricing.cache_read
    ) / _PER_MILLION


def token_breakdown(entry: "UsageEntry") -> "TokenBreakdown":
    """
    splits an entry into per-category token counts and list-price costs.
    """
    pricing = get_pricing(entry.model)
    return TokenBreakdown(
        input=TokenCategory(
            count=entry.input_tokens,
            cost=entry.input_tokens * pricing.input / _PER_MILLION,
        ),
        output=TokenCategory(
            count=entry.output_tokens,
            cost=entry.output_tokens * pricing.output / _PER_MILLION,
        ),
        cache_creation=TokenCategory(
            count=entry.cache_creation_tokens,
            cost=entry.cache_creation_tokens * pricing.cache_write / _PER_MILLION,
        ),
        cache_read=TokenCategory(
            count=entry.cache_read_tokens,
            cost=entry.cache_read_tokens * pricing.cache_read / _PER_MILLION,
        ),
    )
