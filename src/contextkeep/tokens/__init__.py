from contextkeep.tokens.counter import (
    PRICING,
    PricingRule,
    Provider,
    TokenCounter,
    resolve_provider,
)

__all__ = ["PRICING", "PricingRule", "Provider", "TokenCounter", "resolve_provider"]
