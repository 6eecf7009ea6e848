"""Member lifecycle entry points: enroll, unlink, admin removal.

The caller owns the session; each operation commits its own change.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from leaderboard.adapters.protocol import ProviderClient
from leaderboard.domain.models import RevocationReason
from leaderboard.repository import MemberRepository
from leaderboard.vault import SecretVault

logger = structlog.get_logger()


class ProfileIdentityError(Exception):
    """The provider profile carried no usable user id."""


async def enroll_member(
    session: AsyncSession,
    vault: SecretVault,
    whoop_user_id: str,
    display_name: str,
    avatar_url: str | None,
    refresh_token: str,
) -> int:
    """Encrypt the refresh token and insert or update the member. Returns the member id."""
    member_id = await MemberRepository(session).upsert_member(
        whoop_user_id=whoop_user_id,
        display_name=display_name,
        avatar_url=avatar_url,
        refresh_token_enc=vault.encrypt(refresh_token),
    )
    await session.commit()
    logger.info("member_enrolled", member_id=member_id, whoop_user_id=whoop_user_id)
    return member_id


async def unlink_member(
    session: AsyncSession, client: ProviderClient, access_token: str
) -> bool:
    """Remove the member that owns ``access_token``. False when they were not enrolled."""
    profile = await client.fetch_profile(access_token)
    if profile is None:
        raise ProfileIdentityError("Provider profile has no user id")

    repo = MemberRepository(session)
    member = await repo.get_by_whoop_user_id(profile.whoop_user_id)
    if member is None:
        logger.info("unlink_member_not_enrolled", whoop_user_id=profile.whoop_user_id)
        return False
    removed = await repo.revoke(member, RevocationReason.UNLINKED)
    await session.commit()
    return removed


async def remove_member(
    session: AsyncSession,
    member_id: int | None = None,
    whoop_user_id: str | None = None,
) -> bool:
    """Administrative removal by either selector. False when no such member exists."""
    repo = MemberRepository(session)
    if member_id is not None:
        member = await repo.get(member_id)
    elif whoop_user_id is not None:
        member = await repo.get_by_whoop_user_id(whoop_user_id)
    else:
        raise ValueError("member_id or whoop_user_id is required")

    if member is None:
        return False
    removed = await repo.revoke(member, RevocationReason.ADMIN_REMOVED)
    await session.commit()
    return removed
