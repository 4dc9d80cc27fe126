"""Per-tier token pricing used for trace cost accounting."""

from enum import StrEnum


class ModelTier(StrEnum):
    FAST = "fast"
    SMART = "smart"
    DEEP = "deep"


# USD per 1M tokens: (input, output)
TIER_PRICING: dict[ModelTier, tuple[float, float]] = {
    ModelTier.FAST: (0.25, 1.25),
    ModelTier.SMART: (3.0, 15.0),
    ModelTier.DEEP: (15.0, 75.0),
}


def tier_for_model(model: str) -> ModelTier:
    """Map a model name onto a pricing tier (haiku -> fast, opus -> deep)."""
    name = model.lower()
    if "haiku" in name:
        return ModelTier.FAST
    if "opus" in name:
        return ModelTier.DEEP
    return ModelTier.SMART


def calculate_cost(
    tokens_in: int, tokens_out: int, tier: ModelTier | str = ModelTier.SMART
) -> float:
    price_in, price_out = TIER_PRICING[ModelTier(tier)]
    return (tokens_in / 1_000_000) * price_in + (tokens_out / 1_000_000) * price_out


# One step down in cost: opus -> sonnet -> haiku
MODEL_DOWNGRADES = {
    "claude-opus-4-20250514": "claude-sonnet-4-20250514",
    "claude-sonnet-4-20250514": "claude-3-5-haiku-20241022",
    "claude-3-5-sonnet-20241022": "claude-3-5-haiku-20241022",
}


def downgrade_model(model: str) -> str | None:
    """The next cheaper model, keeping any ``provider/`` prefix; None at the bottom tier."""
    provider, _, name = model.rpartition("/")
    cheaper = MODEL_DOWNGRADES.get(name)
    if cheaper is None:
        return None
    return f"{provider}/{cheaper}" if provider else cheaper
