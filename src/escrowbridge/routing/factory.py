"""Factory for creating route providers and the aggregator.

Creates the LI.FI provider when configured for live routing, otherwise
falls back to the simulated provider.
"""

import logging
from typing import Optional

from escrowbridge.config import Settings, get_settings
from escrowbridge.routing.base import RouteAggregator, RouteProvider
from escrowbridge.routing.lifi import TransactionSubmitter

logger = logging.getLogger(__name__)


def create_lifi_provider(
    settings: Optional[Settings] = None,
    submitter: Optional[TransactionSubmitter] = None,
) -> RouteProvider:
    """Create the LI.FI provider from settings."""
    settings = settings or get_settings()
    from escrowbridge.routing.lifi import LiFiProvider

    return LiFiProvider(
        api_url=settings.lifi_api_url,
        api_key=settings.lifi_api_key or None,
        integrator=settings.lifi_integrator,
        slippage=settings.route_slippage,
        timeout=settings.provider_timeout_seconds,
        submitter=submitter,
    )


def create_provider(
    settings: Optional[Settings] = None,
    submitter: Optional[TransactionSubmitter] = None,
) -> RouteProvider:
    """Create the configured route provider.

    Live routing is used only when ``route_provider`` is "lifi" and dry-run
    mode is off.
    """
    settings = settings or get_settings()

    if settings.route_provider.lower() == "lifi" and not settings.dry_run:
        provider = create_lifi_provider(settings, submitter=submitter)
        logger.info(f"Using {provider.name} route provider at {settings.lifi_api_url}")
        return provider

    if settings.route_provider.lower() not in ("dry_run", "lifi"):
        logger.warning(f"Unknown route provider '{settings.route_provider}', using dry run")

    from escrowbridge.routing.dry_run import DryRunRouteProvider

    return DryRunRouteProvider()


def create_aggregator(
    settings: Optional[Settings] = None,
    providers: Optional[list[RouteProvider]] = None,
) -> RouteAggregator:
    """Create a route aggregator.

    Args:
        settings: Settings to use (defaults to cached settings)
        providers: Explicit providers; the configured one is used if omitted

    Returns:
        Configured RouteAggregator
    """
    settings = settings or get_settings()
    aggregator = RouteAggregator(timeout_seconds=settings.provider_timeout_seconds)

    for provider in providers or [create_provider(settings)]:
        aggregator.add_provider(provider)
        logger.info(f"Added {provider.name} provider")

    return aggregator
