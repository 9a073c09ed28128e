"""
Bot Framework Connector REST client for Microsoft Teams.

Covers what the bot needs outside of a live turn: reading a team's name and
roster, opening a 1:1 chat with a member and posting a message into a
conversation. Calls go to the ``serviceUrl`` Teams handed us when the bot was
installed, authenticated with an app token from the Bot Framework login
endpoint.
"""

import asyncio
import time

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import TeamInstallInfo, TeamMember

logger = get_logger(__name__)

BOT_FRAMEWORK_TOKEN_URL = "https://login.microsoftonline.com/botframework.com/oauth2/v2.0/token"
BOT_FRAMEWORK_SCOPE = "https://api.botframework.com/.default"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0  # 1, 2, 4 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
TOKEN_EXPIRY_BUFFER_SECONDS = 300
ROSTER_PAGE_SIZE = 500


class TeamsConnectorError(Exception):
    """Custom exception for Bot Framework Connector failures."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.recoverable = recoverable


class TeamsConnectorClient:
    """
    Thin async wrapper over the Connector REST API.

    Without an app id the client sends unauthenticated requests, which is
    what the local Bot Framework Emulator expects.
    """

    def __init__(
        self,
        app_id: str | None = None,
        app_password: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.app_id = app_id if app_id is not None else settings.MICROSOFT_APP_ID
        self.app_password = (
            app_password if app_password is not None else settings.MICROSOFT_APP_PASSWORD
        )
        self._transport = transport
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport)

    # =================================================================
    # AUTH
    # =================================================================

    async def get_access_token(self) -> str | None:
        """App token for the Connector API, cached until shortly before expiry."""
        if not self.app_id:
            return None

        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            data = {
                "grant_type": "client_credentials",
                "client_id": self.app_id,
                "client_secret": self.app_password or "",
                "scope": BOT_FRAMEWORK_SCOPE,
            }
            response = await self._request_with_retry(
                "POST", BOT_FRAMEWORK_TOKEN_URL, "get_access_token", authenticated=False, data=data
            )
            token_data = response.json()

            self._access_token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 3600))
            self._token_expires_at = (
                time.monotonic() + max(expires_in - TOKEN_EXPIRY_BUFFER_SECONDS, 0)
            )
            logger.debug("Bot Framework token acquired", expires_in=expires_in)
            return self._access_token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    # =================================================================
    # HTTP
    # =================================================================

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        operation: str,
        authenticated: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """
        Perform a request with retry/backoff on throttling and server errors.

        Raises:
            TeamsConnectorError: non-success status after retries, or the
                request could not be sent at all
        """
        headers = await self._auth_headers() if authenticated else {}

        async with self._client() as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.request(method, url, headers=headers, **kwargs)
                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise TeamsConnectorError(
                            f"{operation} failed: {exc}", operation=operation
                        ) from exc

                    wait_time = BACKOFF_BASE_SECONDS * 2 ** (attempt - 1)
                    logger.warning(
                        "Teams connector request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    wait_time = _retry_after(response) or BACKOFF_BASE_SECONDS * 2 ** (attempt - 1)
                    logger.warning(
                        "Teams connector transient status",
                        operation=operation,
                        status_code=response.status_code,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                if response.is_success:
                    return response

                raise TeamsConnectorError(
                    f"{operation} failed with status {response.status_code}",
                    operation=operation,
                    status_code=response.status_code,
                    recoverable=response.status_code in RETRY_STATUS_CODES,
                )

        raise TeamsConnectorError(f"{operation} failed: Unknown error", operation=operation)

    # =================================================================
    # TEAMS
    # =================================================================

    async def get_team_name(self, team: TeamInstallInfo) -> str:
        """Current display name of the team, falling back to the stored one."""
        url = f"{_base(team.service_url)}/v3/teams/{team.team_id}"
        response = await self._request_with_retry("GET", url, "get_team_details")
        name = response.json().get("name")
        return name or team.team_name or "your team"

    async def get_team_members(self, team: TeamInstallInfo) -> list[TeamMember]:
        """Full team roster, following continuation tokens."""
        url = f"{_base(team.service_url)}/v3/conversations/{team.team_id}/pagedmembers"
        members: list[TeamMember] = []
        continuation_token: str | None = None

        while True:
            params = {"pageSize": ROSTER_PAGE_SIZE}
            if continuation_token:
                params["continuationToken"] = continuation_token

            response = await self._request_with_retry(
                "GET", url, "get_team_members", params=params
            )
            page = response.json()

            for raw in page.get("members") or []:
                member = _to_team_member(raw)
                if member is not None:
                    members.append(member)

            continuation_token = page.get("continuationToken")
            if not continuation_token:
                break

        logger.debug("Team roster loaded", team_id=team.team_id, member_count=len(members))
        return members

    # =================================================================
    # CONVERSATIONS
    # =================================================================

    async def create_personal_conversation(self, team: TeamInstallInfo, account_id: str) -> str:
        """Open (or reuse) the 1:1 chat between the bot and a member."""
        payload = {
            "isGroup": False,
            "bot": {"id": f"28:{self.app_id}" if self.app_id else "bot"},
            "members": [{"id": account_id}],
            "tenantId": team.tenant_id,
            "channelData": {"tenant": {"id": team.tenant_id}},
        }
        response = await self._request_with_retry(
            "POST",
            f"{_base(team.service_url)}/v3/conversations",
            "create_conversation",
            json=payload,
        )
        conversation_id = response.json().get("id")
        if not conversation_id:
            raise TeamsConnectorError(
                "Connector returned no conversation id",
                operation="create_conversation",
                recoverable=False,
            )
        return conversation_id

    async def send_message(
        self,
        service_url: str,
        conversation_id: str,
        text: str,
        reply_to_id: str | None = None,
    ) -> None:
        """Post a markdown text message into a conversation."""
        activity = {"type": "message", "textFormat": "markdown", "text": text}
        url = f"{_base(service_url)}/v3/conversations/{conversation_id}/activities"
        if reply_to_id:
            activity["replyToId"] = reply_to_id
            url = f"{url}/{reply_to_id}"

        await self._request_with_retry("POST", url, "send_message", json=activity)


def _base(service_url: str) -> str:
    return service_url.rstrip("/")


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None


def _to_team_member(raw: dict) -> TeamMember | None:
    # Bots and other non-AAD accounts have no object id and cannot be paired
    aad_object_id = raw.get("aadObjectId")
    if not aad_object_id or not raw.get("id"):
        return None

    return TeamMember(
        id=aad_object_id,
        account_id=raw["id"],
        name=raw.get("name"),
        given_name=raw.get("givenName"),
        email=raw.get("email"),
        user_principal_name=raw.get("userPrincipalName"),
    )


teams_connector_client = TeamsConnectorClient()
