"""Resolution of the effective M-Pesa settings for a property.

Precedence is property row -> organization row -> global defaults from the
environment. Rows only override the fields they actually set, so a property
can carry its own shortcode while inheriting credentials from the
organization or the global configuration.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leasepay.config import Settings, get_settings
from leasepay.models.gateway_settings import GatewaySettings
from leasepay.schemas.gateway import ResolvedGatewaySettings

logger = logging.getLogger(__name__)

MERGEABLE_FIELDS = (
    "environment",
    "consumer_key",
    "consumer_secret",
    "passkey",
    "shortcode",
    "party_b",
    "callback_base_url",
    "account_reference_prefix",
)


def _current_settings() -> Settings:
    return get_settings()


def global_gateway_settings(settings: Settings | None = None) -> ResolvedGatewaySettings:
    """Settings built from the environment only."""

    settings = settings or _current_settings()
    return ResolvedGatewaySettings(
        environment=settings.mpesa_environment,
        consumer_key=settings.mpesa_consumer_key,
        consumer_secret=settings.mpesa_consumer_secret,
        passkey=settings.mpesa_passkey,
        shortcode=settings.mpesa_shortcode,
        party_b=settings.mpesa_party_b or settings.mpesa_shortcode,
        callback_base_url=settings.mpesa_callback_base_url,
        account_reference_prefix=settings.mpesa_account_reference_prefix,
        webhook_secret=next(iter(settings.webhook_tokens()), None),
        source="global",
    )


def _latest_active_row(db: Session, *, column, value: int) -> GatewaySettings | None:
    stmt = (
        select(GatewaySettings)
        .where(column == value, GatewaySettings.is_active.is_(True))
        .order_by(GatewaySettings.updated_at.desc(), GatewaySettings.id.desc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def _merge(base: ResolvedGatewaySettings, row: GatewaySettings, source: str) -> ResolvedGatewaySettings:
    overrides: dict[str, Any] = {}
    for name in MERGEABLE_FIELDS:
        value = getattr(row, name)
        if value is not None and value != "":
            overrides[name] = value
    if "shortcode" in overrides and "party_b" not in overrides:
        overrides["party_b"] = overrides["shortcode"]
    return base.model_copy(update={**overrides, "source": source})


def resolve_gateway_settings(
    db: Session,
    *,
    property_id: int | None,
    organization_id: int | None,
) -> ResolvedGatewaySettings:
    """Return the effective gateway settings for a property/organization pair.

    The webhook secret always comes from the deployment configuration: the
    callback endpoint has to authenticate a request before it knows which
    property the payload belongs to.
    """

    base = global_gateway_settings()

    if property_id:
        row = _latest_active_row(db, column=GatewaySettings.property_id, value=property_id)
        if row is not None:
            logger.debug("Gateway settings resolved from property", extra={"property_id": property_id})
            return _merge(base, row, source=f"property:{property_id}")

    if organization_id:
        row = _latest_active_row(db, column=GatewaySettings.organization_id, value=organization_id)
        if row is not None:
            logger.debug(
                "Gateway settings resolved from organization", extra={"organization_id": organization_id}
            )
            return _merge(base, row, source=f"organization:{organization_id}")

    return base


__all__ = ["global_gateway_settings", "resolve_gateway_settings"]
