"""
Per-blueprint rate limits.

The shared ``Limiter`` lives in ``auditflow/__init__.py`` without default
limits; this module attaches ``ENGAGEMENT_RATE_LIMIT`` (per remote IP) to
the engagement API and exempts the health probes.
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        logger.debug("Rate limiting disabled")
        return

    limit = app.config["ENGAGEMENT_RATE_LIMIT"]
    engagement = app.blueprints.get("engagement")
    if engagement is not None:
        limiter.limit(limit)(engagement)
    health = app.blueprints.get("health")
    if health is not None:
        limiter.exempt(health)
    logger.info("Rate limit on engagement API: %s", limit)
