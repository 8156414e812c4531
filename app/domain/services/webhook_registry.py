"""
Webhook Registry

Keeps local webhook registrations in sync with the provider. The provider
caps the number of live webhooks, so an active registration of the same
owner with overlapping filters is reused before a new one is created.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ProviderQuotaExceededError
from app.core.logging import get_logger, log_async_operation
from app.db.models.indexing_job import IndexingJob, JobStatus, TERMINAL_STATUSES
from app.db.models.webhook_registration import RegistrationStatus, WebhookRegistration
from app.domain.services.provider_client import ProviderClient, webhook_id_of

logger = get_logger(__name__)


def _filter_set(filters: dict[str, Any]) -> set[str]:
    return set(filters.get("accounts") or []) | set(filters.get("program_ids") or [])


def filters_overlap(registration: WebhookRegistration, filters: dict[str, Any]) -> bool:
    """Shares at least one account or program (two empty filter sets also match)"""
    existing = registration.filter_set
    requested = _filter_set(filters)
    if not existing and not requested:
        return True
    return bool(existing & requested)


async def release_registration(db: AsyncSession, registration_id: int | None) -> bool:
    """
    Mark a registration inactive once no unfinished job uses it.

    A failed job with a retry scheduled still counts as unfinished, so its
    retry reuses the registration.

    Inactive registrations are deleted by housekeeping after the retention
    window. The caller commits.
    """
    if registration_id is None:
        return False
    registration = await db.get(WebhookRegistration, registration_id)
    if registration is None or registration.status == RegistrationStatus.INACTIVE:
        return False

    result = await db.execute(
        select(IndexingJob.id).where(
            IndexingJob.webhook_registration_id == registration_id,
            or_(
                IndexingJob.status.not_in(list(TERMINAL_STATUSES)),
                and_(
                    IndexingJob.status == JobStatus.FAILED,
                    IndexingJob.next_retry_at.is_not(None),
                ),
            ),
        ).limit(1)
    )
    if result.scalar_one_or_none() is not None:
        return False

    registration.status = RegistrationStatus.INACTIVE
    registration.updated_at = datetime.utcnow()
    logger.info("Webhook registration released", extra_data={"registration_id": registration_id})
    return True


class WebhookRegistry:
    """Create, reuse and reclaim provider webhook registrations"""

    def __init__(self, db: AsyncSession, provider: ProviderClient):
        self.db = db
        self.provider = provider

    async def _find_reusable(self, owner_id: str, filters: dict[str, Any]) -> WebhookRegistration | None:
        result = await self.db.execute(
            select(WebhookRegistration)
            .where(
                WebhookRegistration.owner_id == owner_id,
                WebhookRegistration.status == RegistrationStatus.ACTIVE,
            )
            .order_by(WebhookRegistration.updated_at.desc())
        )
        for registration in result.scalars().all():
            if filters_overlap(registration, filters):
                return registration
        return None

    async def create(
        self,
        owner_id: str,
        filters: dict[str, Any],
        callback_url: str,
        secret: str,
        transaction_types: list[str] | None = None,
    ) -> WebhookRegistration:
        """
        Return a registration serving these filters.

        Reuses a compatible active registration without calling the provider.
        A "webhook limit" refusal triggers one force_cleanup and one retry;
        a second refusal propagates.
        """
        existing = await self._find_reusable(owner_id, filters)
        if existing is not None:
            existing.updated_at = datetime.utcnow()
            await self.db.commit()
            logger.info(
                "Reusing webhook registration",
                extra_data={"registration_id": existing.id, "owner_id": owner_id},
            )
            return existing

        accounts = list(filters.get("accounts") or [])
        programs = list(filters.get("program_ids") or [])
        types = list(transaction_types or [])
        request = {
            "callback_url": callback_url,
            "secret": secret,
            "account_addresses": accounts + programs,
            "transaction_types": types,
        }

        try:
            provider_webhook_id = await self.provider.create_webhook(**request)
        except ProviderQuotaExceededError:
            logger.warning("Provider webhook limit reached, forcing cleanup", extra_data={"owner_id": owner_id})
            await self.force_cleanup()
            provider_webhook_id = await self.provider.create_webhook(**request)

        registration = WebhookRegistration(
            provider_webhook_id=provider_webhook_id,
            owner_id=owner_id,
            callback_url=callback_url,
            secret=secret,
            account_addresses=accounts,
            program_ids=programs,
            transaction_types=types,
            status=RegistrationStatus.ACTIVE,
        )
        self.db.add(registration)
        await self.db.commit()
        await self.db.refresh(registration)

        logger.info(
            "Webhook registration created",
            extra_data={
                "registration_id": registration.id,
                "provider_webhook_id": provider_webhook_id,
                "owner_id": owner_id,
            },
        )
        return registration

    async def force_cleanup(self) -> int:
        """Delete every remote webhook except the most recently created one"""
        remote_ids = [wid for wid in map(webhook_id_of, await self.provider.list_webhooks()) if wid]
        if len(remote_ids) <= 1:
            return 0

        result = await self.db.execute(
            select(WebhookRegistration).where(WebhookRegistration.provider_webhook_id.in_(remote_ids))
        )
        local = {r.provider_webhook_id: r for r in result.scalars().all()}

        # newest local registration wins; otherwise the provider's last entry
        known = sorted(
            (r for r in local.values() if r.created_at is not None),
            key=lambda r: r.created_at,
        )
        keep = known[-1].provider_webhook_id if known else remote_ids[-1]

        deleted = 0
        for provider_webhook_id in remote_ids:
            if provider_webhook_id == keep:
                continue
            await self.provider.delete_webhook(provider_webhook_id)
            deleted += 1
            registration = local.get(provider_webhook_id)
            if registration is not None:
                registration.status = RegistrationStatus.INACTIVE

        await self.db.commit()
        logger.warning(
            "Forced webhook cleanup",
            extra_data={"deleted": deleted, "kept_provider_webhook_id": keep},
        )
        return deleted

    async def _remove_local(self, registration: WebhookRegistration) -> None:
        await self.db.execute(
            update(IndexingJob)
            .where(IndexingJob.webhook_registration_id == registration.id)
            .values(webhook_registration_id=None)
        )
        await self.db.delete(registration)

    async def delete(self, registration: WebhookRegistration) -> None:
        """Idempotent: a webhook the provider no longer knows counts as deleted"""
        await self.provider.delete_webhook(registration.provider_webhook_id)
        await self._remove_local(registration)
        await self.db.commit()
        logger.info(
            "Webhook registration deleted",
            extra_data={"provider_webhook_id": registration.provider_webhook_id},
        )

    async def release(self, registration_id: int | None) -> bool:
        released = await release_registration(self.db, registration_id)
        if released:
            await self.db.commit()
        return released

    @log_async_operation("webhook_housekeeping")
    async def housekeeping(self, retention_hours: int = 24) -> dict[str, int]:
        """
        Reconcile local and remote registrations.

        Local rows missing remotely, or inactive past the retention window,
        are deleted remotely and locally; remote webhooks with no local row
        are deleted remotely.
        """
        remote_ids = {wid for wid in map(webhook_id_of, await self.provider.list_webhooks()) if wid}
        cutoff = datetime.utcnow() - timedelta(hours=retention_hours)

        result = await self.db.execute(select(WebhookRegistration))
        registrations = list(result.scalars().all())
        known_ids = {r.provider_webhook_id for r in registrations}

        removed_local = 0
        deleted_remote = 0
        for registration in registrations:
            missing_remotely = registration.provider_webhook_id not in remote_ids
            expired = (
                registration.status == RegistrationStatus.INACTIVE
                and registration.updated_at is not None
                and registration.updated_at < cutoff
            )
            if not (missing_remotely or expired):
                continue
            if not missing_remotely:
                await self.provider.delete_webhook(registration.provider_webhook_id)
                deleted_remote += 1
            await self._remove_local(registration)
            removed_local += 1

        for provider_webhook_id in remote_ids - known_ids:
            await self.provider.delete_webhook(provider_webhook_id)
            deleted_remote += 1

        await self.db.commit()
        stats = {"removed_local": removed_local, "deleted_remote": deleted_remote}
        logger.info("Webhook housekeeping finished", extra_data=stats)
        return stats
