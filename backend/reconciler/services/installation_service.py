"""Resolve which organization owns a GitHub App installation.

Two sources race to bind an installation: the ``installation`` webhook, which
only knows the sender, and the post-install callback, which carries the
signed-in user's session and active organization. The callback is
authoritative for the organization; the webhook fills in a personal-org
default and never overrides a callback. A write from an account unrelated to
the existing binding is rejected as a possible hijack.
"""

from enum import StrEnum

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.exceptions import MissingRequiredMetadata
from reconciler.db.base import utcnow
from reconciler.db.models.installation_binding import BindingSource, InstallationBinding
from reconciler.webhooks.normalizer import NormalizedEvent

logger = structlog.get_logger(__name__)


class BindOutcome(StrEnum):
    APPLIED = "applied"
    REJECTED = "rejected"


def personal_org_id(account_id: str) -> str:
    """Organization id of a user's personal workspace."""
    return f"personal-{account_id}"


class InstallationResolver:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def bind(
        self,
        installation_id: int,
        source_account_id: str | None,
        candidate_org_id: str | None,
        source: BindingSource,
        account_login: str | None = None,
        repository_ids: list[str] | None = None,
        session: AsyncSession | None = None,
    ) -> BindOutcome:
        """Bind an installation to an organization, or refuse to.

        Without a session, opens and commits its own.
        """
        if session is None:
            async with self.session_factory() as own_session:
                outcome = await self._bind(
                    own_session, installation_id, source_account_id, candidate_org_id,
                    source, account_login, repository_ids,
                )
                await own_session.commit()
                return outcome
        return await self._bind(
            session, installation_id, source_account_id, candidate_org_id,
            source, account_login, repository_ids,
        )

    async def _bind(
        self,
        session: AsyncSession,
        installation_id: int,
        source_account_id: str | None,
        candidate_org_id: str | None,
        source: BindingSource,
        account_login: str | None,
        repository_ids: list[str] | None,
    ) -> BindOutcome:
        log = logger.bind(installation_id=installation_id, source=source.value, account_id=source_account_id)

        binding = await session.get(InstallationBinding, installation_id, with_for_update=True)
        if binding is None:
            try:
                async with session.begin_nested():
                    session.add(
                        InstallationBinding(
                            installation_id=installation_id,
                            owning_account_id=source_account_id,
                            organization_id=candidate_org_id,
                            account_login=account_login,
                            repository_ids=list(repository_ids or []),
                            source=source.value,
                        )
                    )
                log.info("installation_bound", organization_id=candidate_org_id)
                return BindOutcome.APPLIED
            except IntegrityError:
                # Lost the insert race; evaluate against the winner's row
                binding = await session.get(
                    InstallationBinding, installation_id, with_for_update=True, populate_existing=True
                )

        same_owner = source_account_id is not None and binding.owning_account_id == source_account_id
        same_org = candidate_org_id is not None and binding.organization_id == candidate_org_id
        unclaimed = binding.owning_account_id is None and source == BindingSource.CALLBACK

        if not (same_owner or same_org or unclaimed):
            log.warning(
                "installation_bind_rejected",
                owning_account_id=binding.owning_account_id,
                organization_id=binding.organization_id,
                candidate_org_id=candidate_org_id,
                possible_hijack=True,
            )
            return BindOutcome.REJECTED

        if source == BindingSource.CALLBACK or binding.source == BindingSource.WEBHOOK:
            if candidate_org_id is not None and binding.organization_id != candidate_org_id:
                log.info(
                    "installation_org_updated",
                    previous_org_id=binding.organization_id,
                    organization_id=candidate_org_id,
                )
                binding.organization_id = candidate_org_id
            binding.source = source.value
        if binding.owning_account_id is None:
            binding.owning_account_id = source_account_id
        if account_login:
            binding.account_login = account_login
        if repository_ids is not None:
            binding.repository_ids = list(repository_ids)
        binding.updated_at = utcnow()

        return BindOutcome.APPLIED

    async def update_repositories(
        self,
        session: AsyncSession,
        installation_id: int,
        added: list[str],
        removed: list[str],
    ) -> str:
        binding = await session.get(InstallationBinding, installation_id, with_for_update=True)
        if binding is None:
            logger.info("installation_repositories_unknown_installation", installation_id=installation_id)
            return "ignored"

        removed_ids = set(removed)
        repositories = [repo for repo in binding.repository_ids or [] if repo not in removed_ids]
        repositories.extend(repo for repo in added if repo not in repositories)
        binding.repository_ids = repositories
        binding.updated_at = utcnow()
        return "repositories_updated"

    async def unbind(self, session: AsyncSession, installation_id: int) -> str:
        result = await session.execute(
            delete(InstallationBinding).where(InstallationBinding.installation_id == installation_id)
        )
        if result.rowcount:
            logger.info("installation_unbound", installation_id=installation_id)
            return "unbound"
        return "ignored"

    async def handle(self, session: AsyncSession, event: NormalizedEvent) -> str:
        payload = event.payload
        installation_id = payload["installation_id"]
        action = payload.get("action")

        if action == "bind":
            sender_id = payload.get("sender_id")
            if not sender_id:
                raise MissingRequiredMetadata(event.event_type, "sender_id")
            outcome = await self.bind(
                installation_id,
                sender_id,
                personal_org_id(sender_id),
                BindingSource.WEBHOOK,
                account_login=payload.get("account_login"),
                repository_ids=payload.get("repository_ids"),
                session=session,
            )
            return outcome.value
        if action == "unbind":
            return await self.unbind(session, installation_id)
        if action == "repositories":
            return await self.update_repositories(
                session, installation_id, payload.get("added") or [], payload.get("removed") or []
            )
        raise MissingRequiredMetadata(event.event_type, "action")
