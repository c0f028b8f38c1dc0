from __future__ import annotations

import logging

from injapanfood.core.config import settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_core_production_settings(problems: list[str]) -> None:
    secret = (settings.secret_key or "").strip()
    _append_if(
        problems,
        condition=secret in {"", "dev-secret-key"} or len(secret) < 32,
        message="SECRET_KEY must be set to the identity provider's signing secret (not the dev default).",
    )
    _append_if(
        problems,
        condition=(settings.database_url or "").strip().lower().startswith("sqlite"),
        message="DATABASE_URL must point to PostgreSQL in production.",
    )
    _append_if(
        problems,
        condition=not (settings.sentry_dsn or "").strip(),
        message="SENTRY_DSN must be configured in production.",
    )


def _validate_coupon_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=not (settings.guest_user_id or "").strip(),
        message="GUEST_USER_ID must not be empty.",
    )
    _append_if(
        problems,
        condition=int(settings.coupon_redeem_max_attempts or 0) < 1,
        message="COUPON_REDEEM_MAX_ATTEMPTS must be at least 1.",
    )
    _append_if(
        problems,
        condition=int(settings.coupon_validate_rate_limit or 0) <= 0,
        message="COUPON_VALIDATE_RATE_LIMIT must be enabled in production.",
    )


def validate_production_settings() -> None:
    """
    Fail fast on insecure defaults when running in production.

    This prevents accidentally deploying with development secrets or a throwaway database.
    """
    if not _is_production():
        return

    problems: list[str] = []
    _validate_core_production_settings(problems)
    _validate_coupon_settings(problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
    logger.info("production_settings_ok")
