"""
Rate limiting configuration.

The Limiter in grc/__init__.py has no default limits; limits are attached
per blueprint here, after registration, from config:

    API_RATE_LIMIT        approval, prioritization, notifications
    SCHEDULER_RATE_LIMIT  manual job triggers
    health                exempt (load balancer health checks)

Set RATELIMIT_ENABLED = False to turn limiting off (testing does).
"""

import logging

logger = logging.getLogger(__name__)

_API_BLUEPRINTS = ("approval_bp", "prioritization_bp", "notification_bp")


def init_rate_limits(app, limiter):
    if not app.config.get("RATELIMIT_ENABLED", True):
        logger.info("Rate limiting disabled")
        return

    api_limit = app.config["API_RATE_LIMIT"]
    for name in _API_BLUEPRINTS:
        if name in app.blueprints:
            limiter.limit(api_limit)(app.blueprints[name])
    if "scheduler_bp" in app.blueprints:
        limiter.limit(app.config["SCHEDULER_RATE_LIMIT"])(app.blueprints["scheduler_bp"])
    if "health_bp" in app.blueprints:
        limiter.exempt(app.blueprints["health_bp"])

    logger.info("Rate limits: api=%s scheduler=%s",
                api_limit, app.config["SCHEDULER_RATE_LIMIT"])
