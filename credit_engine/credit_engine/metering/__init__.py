"""Usage metering for hosted backend deployments.

Parses usage events, prices them in credits and accumulates the unrounded
cost per deployment until the sync reconciler reports it.
"""

from credit_engine.metering.events import UsageTopic, parse_usage_event
from credit_engine.metering.pricing import DEFAULT_PRICING, PricingTable, round_credits_for_sync

__all__ = ["DEFAULT_PRICING", "PricingTable", "UsageTopic", "parse_usage_event", "round_credits_for_sync"]
