"""
Pair-up notifications sent as 1:1 Teams messages.
"""

import re
from urllib.parse import quote

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import TeamInstallInfo, TeamMember
from app.services.teams.connector_client import TeamsConnectorClient, teams_connector_client

logger = get_logger(__name__)

CHAT_LINK = "https://teams.microsoft.com/l/chat/0/0?users={upn}&message=Hi%20there%20"
MEETING_LINK = "https://teams.microsoft.com/l/meeting/new?subject={subject}&attendees={upn}&content={content}"

_MARKDOWN_SPECIAL = re.compile(r"([\\`*_\[\]()#~>|<])")


def escape_markdown(text: str) -> str:
    """Backslash-escape characters Teams markdown would interpret."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def _first_name(member: TeamMember) -> str:
    return member.given_name or member.display_name


def _is_guest(member: TeamMember) -> bool:
    return "#ext#" in (member.user_principal_name or "").lower()


def build_pair_up_message(
    team_name: str, recipient: TeamMember, partner: TeamMember, bot_display_name: str
) -> str:
    """Markdown text telling ``recipient`` who they were paired with."""
    lines = [
        f"Hi {escape_markdown(_first_name(recipient))}, you've been matched!",
        "",
        f"{escape_markdown(bot_display_name)} paired you with "
        f"**{escape_markdown(partner.display_name)}** from {escape_markdown(team_name)} "
        "this round. Reach out and find a time to meet.",
    ]

    # Guests have no usable UPN; their email addresses them instead
    partner_upn = partner.email if _is_guest(partner) else partner.user_principal_name
    if partner_upn:
        partner_upn = quote(partner_upn, safe="@")
        chat_link = CHAT_LINK.format(upn=partner_upn)
        lines += ["", f"[Chat with {escape_markdown(_first_name(partner))}]({chat_link})"]
        if not _is_guest(partner):
            subject = quote(f"Meetup: {_first_name(recipient)} / {_first_name(partner)}")
            content = quote(f"Meetup arranged by {bot_display_name}")
            meeting_link = MEETING_LINK.format(subject=subject, upn=partner_upn, content=content)
            lines.append(f"[Propose a meetup]({meeting_link})")

    lines += ["", "Need a break from pair-ups? Reply **optout** any time."]
    return "\n".join(lines)


class TeamsNotificationService:
    """Sends pair-up messages through the Connector API."""

    def __init__(
        self,
        connector: TeamsConnectorClient | None = None,
        bot_display_name: str | None = None,
        testing: bool | None = None,
    ):
        self.connector = connector or teams_connector_client
        self.bot_display_name = bot_display_name or settings.BOT_DISPLAY_NAME
        self.testing = settings.TESTING if testing is None else testing

    async def notify_user(
        self,
        team: TeamInstallInfo,
        team_name: str,
        recipient: TeamMember,
        partner: TeamMember,
    ) -> bool:
        """
        Send ``recipient`` their pair-up message.

        Returns True once the message is posted (or would have been, in
        testing mode). Connector failures propagate as TeamsConnectorError.
        """
        text = build_pair_up_message(team_name, recipient, partner, self.bot_display_name)

        if self.testing:
            logger.info(
                "Testing mode, pair-up message not sent",
                team_id=team.team_id,
                user_id=recipient.id,
                partner_id=partner.id,
            )
            return True

        if not recipient.account_id:
            logger.warning("Member has no Teams account id", user_id=recipient.id)
            return False

        conversation_id = await self.connector.create_personal_conversation(
            team, recipient.account_id
        )
        await self.connector.send_message(team.service_url, conversation_id, text)

        logger.debug("Pair-up message sent", team_id=team.team_id, user_id=recipient.id)
        return True

