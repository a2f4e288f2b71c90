"""
Per-service login page configuration.

The effective configuration of a method for a service is the per-service
:class:`ServiceAuthMethod` row laid over the global :class:`AuthMethod`
catalog entry: any non-null override wins, null falls back to the catalog.

A method can be *enabled* without being *implemented*; that shows a "coming
soon" button on the login page. Only methods that are both enabled and
implemented may be chosen as the page's default method.

Reordering always rewrites ``display_order`` for every method of the config
as contiguous 0-based values in one commit.
"""

import logging
from typing import Any, Iterable, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models import AuthMethod, LoginPageConfig, Service, ServiceAuthMethod

from .errors import InvalidDefault, InvalidReference, NotFound
from .strategies import strategy_registry

logger = logging.getLogger(__name__)

BRANDING_FIELDS = ("title", "description", "logo_url", "primary_color", "default_method")
METHOD_OVERRIDE_FIELDS = (
    "enabled",
    "show_coming_soon_badge",
    "button_text",
    "button_variant",
    "help_text",
)


class EffectiveAuthMethod(BaseModel):
    id: str
    name: str
    description: str
    icon: str
    category: str
    implemented: bool
    enabled: bool
    show_coming_soon_badge: bool
    button_text: str
    button_variant: str
    help_text: Optional[str] = None
    display_order: int
    selectable_as_default: bool
    is_default: bool = False


async def sync_catalog(db: AsyncSession) -> int:
    """Upsert one :class:`AuthMethod` row per registry entry."""
    count = 0
    for position, entry in enumerate(strategy_registry.catalog()):
        meta = entry.metadata
        row = await db.get(AuthMethod, meta.id)
        if row is None:
            row = AuthMethod(id=meta.id)
            db.add(row)
        row.name = meta.name
        row.description = meta.description
        row.icon = meta.icon
        row.button_text = meta.button_text
        row.button_variant = meta.button_variant
        row.help_text = meta.help_text
        row.category = meta.category
        row.implemented = entry.implemented
        row.sort_order = position
        count += 1
    await db.commit()
    logger.debug(f"Auth method catalog synced ({count} methods)")
    return count


def effective_method(
    row: ServiceAuthMethod, default_method: Optional[str] = None
) -> EffectiveAuthMethod:
    """Overlay a per-service row on its catalog entry."""
    method = row.auth_method

    def pick(override, fallback):
        return fallback if override is None else override

    return EffectiveAuthMethod(
        id=method.id,
        name=method.name,
        description=method.description,
        icon=method.icon,
        category=method.category,
        implemented=method.implemented,
        enabled=row.enabled,
        show_coming_soon_badge=pick(row.show_coming_soon_badge, not method.implemented),
        button_text=pick(row.button_text, method.button_text),
        button_variant=pick(row.button_variant, method.button_variant),
        help_text=pick(row.help_text, method.help_text),
        display_order=row.display_order,
        selectable_as_default=bool(row.enabled and method.implemented),
        is_default=method.id == default_method,
    )


async def _load_config(db: AsyncSession, service_id: str) -> Optional[LoginPageConfig]:
    result = await db.execute(
        select(LoginPageConfig)
        .options(
            selectinload(LoginPageConfig.methods).selectinload(ServiceAuthMethod.auth_method)
        )
        .where(LoginPageConfig.service_id == service_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _catalog(db: AsyncSession) -> list[AuthMethod]:
    result = await db.execute(select(AuthMethod).order_by(AuthMethod.sort_order))
    return list(result.scalars().all())


async def get_or_create_login_config(
    db: AsyncSession, service_id: str, actor_id: Optional[str] = None
) -> LoginPageConfig:
    """
    Return the service's login config, creating it on first use.

    A new config gets one row per catalog method: implemented methods
    enabled, catalog order, first implemented method as default. Catalog
    methods added later are appended disabled.
    """
    config = await _load_config(db, service_id)
    catalog = await _catalog(db)

    if config is None:
        service = await db.get(Service, service_id)
        if service is None:
            raise NotFound(f"Service '{service_id}' not found")
        default = next((m.id for m in catalog if m.implemented), None)
        config = LoginPageConfig(
            service_id=service_id,
            title=f"Sign in to {service.name}",
            description=service.description or "",
            default_method=default,
            created_by=actor_id,
            updated_by=actor_id,
        )
        config.methods = [
            ServiceAuthMethod(
                auth_method_id=m.id, enabled=m.implemented, display_order=position
            )
            for position, m in enumerate(catalog)
        ]
        db.add(config)
        try:
            await db.commit()
        except IntegrityError:
            # Another request created it first
            await db.rollback()
        config = await _load_config(db, service_id)
        return config

    configured = {row.auth_method_id for row in config.methods}
    missing = [m for m in catalog if m.id not in configured]
    if missing:
        next_order = len(config.methods)
        for offset, m in enumerate(missing):
            db.add(
                ServiceAuthMethod(
                    login_config_id=config.id,
                    auth_method_id=m.id,
                    enabled=False,
                    display_order=next_order + offset,
                )
            )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
        config = await _load_config(db, service_id)
    return config


def _sorted_rows(config: LoginPageConfig) -> list[ServiceAuthMethod]:
    return sorted(config.methods, key=lambda r: (r.display_order, r.auth_method_id))


def _effective_list(config: LoginPageConfig) -> list[EffectiveAuthMethod]:
    return [effective_method(r, config.default_method) for r in _sorted_rows(config)]


async def list_for_service(db: AsyncSession, service_id: str) -> list[EffectiveAuthMethod]:
    """Ordered effective method configuration for a service."""
    config = await get_or_create_login_config(db, service_id)
    return _effective_list(config)


async def get_login_page(
    db: AsyncSession, service_id: str
) -> tuple[LoginPageConfig, list[EffectiveAuthMethod]]:
    config = await get_or_create_login_config(db, service_id)
    return config, _effective_list(config)


def _check_default(config: LoginPageConfig, method_id: Optional[str]) -> None:
    if method_id is None:
        return
    row = next((r for r in config.methods if r.auth_method_id == method_id), None)
    if row is None:
        raise InvalidDefault(f"Unknown authentication method '{method_id}'")
    if not row.auth_method.implemented:
        raise InvalidDefault(
            f"Method '{method_id}' is not implemented and cannot be the default"
        )
    if not row.enabled:
        raise InvalidDefault(
            f"Method '{method_id}' is disabled and cannot be the default"
        )


def _renumber(rows: list[ServiceAuthMethod], leading: list[str]) -> None:
    """
    Put ``leading`` method ids first in the given order, the rest after in
    their current order, and rewrite ``display_order`` as 0..n-1.
    """
    by_id = {r.auth_method_id: r for r in rows}
    ordered = [by_id[mid] for mid in leading]
    ordered += [
        r
        for r in sorted(rows, key=lambda r: (r.display_order, r.auth_method_id))
        if r.auth_method_id not in leading
    ]
    for position, row in enumerate(ordered):
        row.display_order = position


def _validate_ids(config: LoginPageConfig, method_ids: list[str]) -> None:
    configured = {r.auth_method_id for r in config.methods}
    duplicates = {m for m in method_ids if method_ids.count(m) > 1}
    if duplicates:
        raise InvalidReference(
            f"Duplicate method id(s): {', '.join(sorted(duplicates))}", field="methods"
        )
    unknown = [m for m in method_ids if m not in configured]
    if unknown:
        raise InvalidReference(
            f"Unknown method id(s): {', '.join(unknown)}", field="methods"
        )


async def _commit_or_rollback(db: AsyncSession) -> None:
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def set_order(
    db: AsyncSession, service_id: str, method_ids: Iterable[str]
) -> list[EffectiveAuthMethod]:
    """
    Reorder methods. Listed ids come first in the given order; methods not
    listed keep their relative order after them.
    """
    method_ids = list(method_ids)
    config = await get_or_create_login_config(db, service_id)
    _validate_ids(config, method_ids)
    _renumber(list(config.methods), method_ids)
    await _commit_or_rollback(db)
    return await list_for_service(db, service_id)


async def set_enabled(
    db: AsyncSession, service_id: str, method_id: str, enabled: bool
) -> EffectiveAuthMethod:
    config = await get_or_create_login_config(db, service_id)
    _validate_ids(config, [method_id])
    if not enabled and config.default_method == method_id:
        raise InvalidDefault(
            f"Method '{method_id}' is the login page default and cannot be disabled"
        )
    row = next(r for r in config.methods if r.auth_method_id == method_id)
    row.enabled = enabled
    await _commit_or_rollback(db)
    config = await _load_config(db, service_id)
    row = next(r for r in config.methods if r.auth_method_id == method_id)
    return effective_method(row, config.default_method)


async def replace_methods(
    db: AsyncSession,
    service_id: str,
    methods: list[dict[str, Any]],
    actor_id: Optional[str] = None,
) -> list[EffectiveAuthMethod]:
    """
    Apply a full per-service method configuration in one commit.

    Each entry has ``id`` (catalog method id) plus any of the override
    fields and ``display_order``. Ordering is rewritten for the whole config;
    the login page default must still be enabled afterwards.
    """
    config = await get_or_create_login_config(db, service_id)
    ids = [m["id"] for m in methods]
    _validate_ids(config, ids)

    try:
        by_id = {r.auth_method_id: r for r in config.methods}
        for entry in methods:
            row = by_id[entry["id"]]
            for field in METHOD_OVERRIDE_FIELDS:
                if field in entry:
                    value = entry[field]
                    if field == "enabled" and value is None:
                        continue
                    setattr(row, field, value)

        def rank(pair):
            position, entry = pair
            order = entry.get("display_order")
            if order is None:
                order = by_id[entry["id"]].display_order
            return (order, position)

        ranked = sorted(enumerate(methods), key=rank)
        _renumber(list(config.methods), [entry["id"] for _, entry in ranked])

        _check_default(config, config.default_method)
        config.updated_by = actor_id or config.updated_by
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Replaced login methods for service {service_id} ({len(methods)} entries)")
    return await list_for_service(db, service_id)


async def update_login_config(
    db: AsyncSession,
    service_id: str,
    updates: dict[str, Any],
    actor_id: Optional[str] = None,
) -> LoginPageConfig:
    """Partial update of branding fields; validates ``default_method``."""
    config = await get_or_create_login_config(db, service_id, actor_id)
    unknown = set(updates) - set(BRANDING_FIELDS)
    if unknown:
        raise InvalidReference(
            f"Unknown login config field(s): {', '.join(sorted(unknown))}"
        )

    if updates.get("default_method") is not None:
        _check_default(config, updates["default_method"])

    for field, value in updates.items():
        if field in ("title", "description") and value is None:
            continue
        setattr(config, field, value)
    config.updated_by = actor_id
    await _commit_or_rollback(db)
    return await _load_config(db, service_id)
