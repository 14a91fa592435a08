from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional, Tuple

import discord

from verification_bot.core.errors import RoleAssignmentError, RoleConfigError, RolePermissionError
from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import RankDefinition

logger = get_logger("role_manager")


@dataclass(frozen=True)
class RoleTransition:
    """What ``assign`` changed on a member, kept so the change can be reverted."""

    member_id: int
    removed: Tuple[discord.abc.Snowflake, ...] = field(default_factory=tuple)
    added: Optional[discord.abc.Snowflake] = None


class RoleAssignmentStateMachine:
    """
    Moves a member to exactly one rank role.

    The transition is two-step: every held rank role is removed, then the
    target role is added.  If the second step fails the member is left with
    no rank role, and the next successful verification repeats both steps.
    """

    def __init__(self, role_tokens: Callable[[], FrozenSet[str]]) -> None:
        self._role_tokens = role_tokens

    def is_rank_role(self, role: discord.abc.Snowflake) -> bool:
        return str(role.id) in self._role_tokens()

    def current_rank_roles(self, member: discord.Member) -> List[discord.Role]:
        return [role for role in member.roles if self.is_rank_role(role)]

    async def assign(self, member: discord.Member, rank: RankDefinition) -> RoleTransition:
        removed = await self.remove_all(member, reason="Removing old rank roles before assigning new one")

        role = self._resolve(member.guild, rank.token)
        if role is None:
            logger.error(
                "Rank role %s (%s) not found in guild %s", rank.token, rank.display_name, member.guild.id
            )
            raise RoleConfigError(rank.token, rank.display_name)

        await self._apply(member.add_roles, role, reason=f"Assigned rank role: {rank.display_name}")
        logger.info("Rank role %s assigned to %s", rank.display_name, member.id)
        return RoleTransition(member_id=member.id, removed=tuple(removed), added=role)

    async def remove(self, member: discord.Member, role_token: str) -> bool:
        """Remove one rank role. Returns False when the role is unknown or not held."""
        role = self._resolve(member.guild, role_token)
        if role is None:
            logger.warning("Role %s not found in guild %s", role_token, member.guild.id)
            return False
        if all(held.id != role.id for held in member.roles):
            logger.debug("Member %s does not hold role %s", member.id, role_token)
            return False
        await self._apply(member.remove_roles, role, reason="Removing rank role")
        logger.info("Rank role %s removed from %s", role_token, member.id)
        return True

    async def remove_all(self, member: discord.Member, *, reason: str = "Removing rank roles") -> List[discord.Role]:
        held = self.current_rank_roles(member)
        if not held:
            return []
        await self._apply(member.remove_roles, *held, reason=reason)
        logger.info("Removed %d rank role(s) from %s", len(held), member.id)
        return held

    async def revert(self, member: discord.Member, transition: RoleTransition) -> bool:
        """Best-effort undo of ``transition``. Returns False if Discord rejected it."""
        try:
            if transition.added is not None:
                await member.remove_roles(transition.added, reason="Reverting rank assignment")
            if transition.removed:
                await member.add_roles(*transition.removed, reason="Reverting rank assignment")
        except discord.HTTPException as exc:
            logger.error("Failed to revert rank assignment for %s: %s", member.id, exc)
            return False
        logger.info("Reverted rank assignment for %s", member.id)
        return True

    @staticmethod
    def _resolve(guild: discord.Guild, token: str) -> Optional[discord.Role]:
        try:
            return guild.get_role(int(token))
        except (TypeError, ValueError):
            return None

    @staticmethod
    async def _apply(action, *roles: discord.abc.Snowflake, reason: str) -> None:
        try:
            await action(*roles, reason=reason)
        except discord.Forbidden as exc:
            raise RolePermissionError(
                "Bot does not have permission to manage roles. Please check bot permissions.",
                code="missing_permissions",
            ) from exc
        except discord.HTTPException as exc:
            raise RoleAssignmentError(f"Discord rejected the role update: {exc}", code="http_error") from exc


__all__ = ["RoleAssignmentStateMachine", "RoleTransition"]
