"""GitHub App post-install callback.

GitHub redirects the installing user here with ``installation_id`` and
``setup_action``. The user's session decides which organization the
installation is bound to.
"""

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, RedirectResponse

from reconciler.core.auth import SessionUser, get_optional_user
from reconciler.core.config import get_settings
from reconciler.core.exceptions import GitHubAPIError, TransientExternalFailure
from reconciler.db.base import get_session_factory
from reconciler.db.models.installation_binding import BindingSource
from reconciler.integrations.github import GitHubAppClient
from reconciler.services.installation_service import (
    BindOutcome,
    InstallationResolver,
    personal_org_id,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_installation_resolver() -> InstallationResolver:
    return InstallationResolver(get_session_factory())


def get_github_client() -> GitHubAppClient:
    return GitHubAppClient()


def _redirect(path: str) -> RedirectResponse:
    base = get_settings().frontend_url.rstrip("/")
    return RedirectResponse(url=f"{base}{path}", status_code=302)


@router.get("/github/installation-callback")
async def installation_callback(
    installation_id: str | None = None,
    setup_action: str | None = None,
    user: SessionUser | None = Depends(get_optional_user),
    resolver: InstallationResolver = Depends(get_installation_resolver),
    github: GitHubAppClient = Depends(get_github_client),
):
    if user is None:
        return _redirect("/sign-in")

    if installation_id is None:
        return _redirect("/integrations")

    try:
        parsed_id = int(installation_id)
    except ValueError:
        parsed_id = 0
    if parsed_id <= 0:
        return JSONResponse(status_code=400, content={"error": "Invalid installation_id parameter"})

    log = logger.bind(installation_id=parsed_id, user_id=user.user_id)

    account_id = user.github_account_id
    if not account_id:
        log.warning("installation_callback_without_github_account")
        return _redirect("/integrations?error=github_not_linked")

    org_id = user.active_org_id or personal_org_id(account_id)

    try:
        installation = await github.get_installation(parsed_id)
        repository_ids = await github.list_installation_repository_ids(parsed_id)
    except (GitHubAPIError, TransientExternalFailure) as exc:
        log.error("installation_callback_lookup_failed", error=str(exc))
        return _redirect("/integrations?error=installation_lookup_failed")

    outcome = await resolver.bind(
        parsed_id,
        account_id,
        org_id,
        BindingSource.CALLBACK,
        account_login=(installation.get("account") or {}).get("login"),
        repository_ids=repository_ids,
    )

    if outcome == BindOutcome.REJECTED:
        return _redirect("/integrations?error=installation_owned")

    log.info("installation_callback_bound", organization_id=org_id, setup_action=setup_action)
    if setup_action == "install":
        return _redirect(f"/{org_id}/integrations/configure/{parsed_id}?new=1")
    return _redirect(f"/{org_id}/integrations")
