"""
Handles Bot Framework activities delivered to /api/messages.

- conversationUpdate: tracks which teams the bot is installed in and
  welcomes new members of those teams.
- message: ``optout`` / ``optin`` commands, typed or submitted from a card.
  Anything else in a personal chat gets a short help reply.
"""

import re
from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import TeamInstallInfo
from app.repositories.team_repository import TeamRepository, team_repository
from app.repositories.user_opt_in_repository import UserOptInRepository, user_opt_in_repository
from app.services.teams.connector_client import (
    TeamsConnectorClient,
    TeamsConnectorError,
    teams_connector_client,
)
from app.services.teams.notification_service import escape_markdown

logger = get_logger(__name__)

OPT_OUT = "optout"
OPT_IN = "optin"

_MENTION_TAG = re.compile(r"<at>.*?</at>", re.IGNORECASE | re.DOTALL)

OPT_OUT_CONFIRMATION = (
    "You're paused and won't be paired up in the next rounds. "
    "Reply **optin** whenever you'd like to be matched again."
)
OPT_IN_CONFIRMATION = (
    "You're in! You'll be included in the next round of pair-ups. "
    "Reply **optout** to take a break."
)
HELP_TEXT = (
    "I pair up members of your team so you can meet someone new. "
    "Reply **optout** to pause pair-ups or **optin** to resume them."
)


def normalize_command(text: str | None) -> str:
    """Strip bot mentions and whitespace; lowercase what is left."""
    if not text:
        return ""
    return _MENTION_TAG.sub("", text).strip().lower()


def _tenant_id(activity: dict[str, Any]) -> str | None:
    channel_data = activity.get("channelData") or {}
    return (channel_data.get("tenant") or {}).get("id") or (
        activity.get("conversation") or {}
    ).get("tenantId")


def _team_id(activity: dict[str, Any]) -> str | None:
    channel_data = activity.get("channelData") or {}
    return (channel_data.get("team") or {}).get("id")


class ActivityHandler:
    def __init__(
        self,
        team_store: TeamRepository | None = None,
        opt_in_store: UserOptInRepository | None = None,
        connector: TeamsConnectorClient | None = None,
        bot_display_name: str | None = None,
    ):
        self.team_store = team_store or team_repository
        self.opt_in_store = opt_in_store or user_opt_in_repository
        self.connector = connector or teams_connector_client
        self.bot_display_name = bot_display_name or settings.BOT_DISPLAY_NAME

    def is_tenant_allowed(self, activity: dict[str, Any]) -> bool:
        if settings.DISABLE_TENANT_FILTER:
            return True
        return _tenant_id(activity) in settings.allowed_tenant_ids()

    async def handle(self, activity: dict[str, Any]) -> None:
        activity_type = activity.get("type")

        if not self.is_tenant_allowed(activity):
            logger.warning(
                "Activity from unknown tenant ignored",
                activity_type=activity_type,
                tenant_id=_tenant_id(activity),
            )
            return

        if activity_type == "conversationUpdate":
            await self.on_conversation_update(activity)
        elif activity_type == "message":
            await self.on_message(activity)
        else:
            logger.debug("Unhandled activity type", activity_type=activity_type)

    # =================================================================
    # INSTALLATION
    # =================================================================

    async def on_conversation_update(self, activity: dict[str, Any]) -> None:
        bot_id = (activity.get("recipient") or {}).get("id")
        team_id = _team_id(activity)
        conversation_type = (activity.get("conversation") or {}).get("conversationType")

        if not team_id or conversation_type != "channel":
            return

        members_added = activity.get("membersAdded") or []
        members_removed = activity.get("membersRemoved") or []

        if any(m.get("id") == bot_id for m in members_removed):
            removed = await self.team_store.delete_installed(team_id)
            logger.info("Bot removed from team", team_id=team_id, had_record=removed)
            return

        if any(m.get("id") == bot_id for m in members_added):
            team = TeamInstallInfo(
                team_id=team_id,
                tenant_id=_tenant_id(activity) or "",
                service_url=activity.get("serviceUrl", ""),
                team_name=((activity.get("channelData") or {}).get("team") or {}).get("name"),
                installer_name=(activity.get("from") or {}).get("name"),
            )
            await self.team_store.save_installed(team)
            logger.info("Bot installed in team", team_id=team_id, tenant_id=team.tenant_id)

            team_label = escape_markdown(team.team_name or "this team")
            await self._send_best_effort(
                team.service_url,
                team_id,
                f"Hi everyone! {escape_markdown(self.bot_display_name)} will pair up members "
                f"of {team_label} at regular intervals so you can meet someone new. "
                "Reply **optout** in a chat with me to skip pair-ups.",
            )
            return

        team = await self.team_store.get_installed_team(team_id)
        if team is None:
            return

        for member in members_added:
            account_id = member.get("id")
            if not account_id or account_id == bot_id:
                continue
            await self._welcome_member(team, account_id)

    async def _welcome_member(self, team: TeamInstallInfo, account_id: str) -> None:
        try:
            conversation_id = await self.connector.create_personal_conversation(team, account_id)
        except TeamsConnectorError as e:
            logger.warning(
                "Could not open chat with new member",
                team_id=team.team_id,
                error=str(e),
                status_code=e.status_code,
            )
            return

        await self._send_best_effort(
            team.service_url,
            conversation_id,
            f"Welcome to {escape_markdown(team.team_name or 'the team')}! {HELP_TEXT}",
        )

    # =================================================================
    # MESSAGES
    # =================================================================

    async def on_message(self, activity: dict[str, Any]) -> None:
        value = activity.get("value")
        if not isinstance(value, dict):
            value = {}

        action = value.get("action")
        if value:
            command = normalize_command(action) if isinstance(action, str) else ""
        else:
            command = normalize_command(activity.get("text"))

        team_id = value.get("teamId")
        if not isinstance(team_id, str) or not team_id:
            team_id = _team_id(activity)

        user_id = (activity.get("from") or {}).get("aadObjectId")
        conversation = activity.get("conversation") or {}
        is_personal = conversation.get("conversationType", "personal") == "personal"

        if command in (OPT_OUT, OPT_IN) and user_id:
            opted_in = command == OPT_IN
            await self.opt_in_store.set_opt_in(
                user_id,
                opted_in,
                team_id=team_id,
                tenant_id=_tenant_id(activity),
                service_url=activity.get("serviceUrl"),
            )
            await self._reply(activity, OPT_IN_CONFIRMATION if opted_in else OPT_OUT_CONFIRMATION)
            return

        if is_personal:
            logger.debug("Unrecognized personal message", user_id=user_id)
            await self._reply(activity, HELP_TEXT)

    async def _reply(self, activity: dict[str, Any], text: str) -> None:
        conversation_id = (activity.get("conversation") or {}).get("id")
        if not conversation_id:
            return
        await self.connector.send_message(
            activity.get("serviceUrl", ""), conversation_id, text, reply_to_id=activity.get("id")
        )

    async def _send_best_effort(self, service_url: str, conversation_id: str, text: str) -> None:
        try:
            await self.connector.send_message(service_url, conversation_id, text)
        except TeamsConnectorError as e:
            logger.warning(
                "Welcome message not sent",
                conversation_id=conversation_id,
                error=str(e),
                status_code=e.status_code,
            )


activity_handler = ActivityHandler()
