import json

import httpx
import pytest

from app.services.teams import connector_client
from app.services.teams.connector_client import TeamsConnectorClient, TeamsConnectorError
from tests.conftest import make_team


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(connector_client, "BACKOFF_BASE_SECONDS", 0)


def _client(handler, app_id="app-id") -> TeamsConnectorClient:
    return TeamsConnectorClient(
        app_id=app_id, app_password="secret", transport=httpx.MockTransport(handler)
    )


def _token_response(request: httpx.Request) -> httpx.Response | None:
    if request.url.host == "login.microsoftonline.com":
        return httpx.Response(200, json={"access_token": "bf-token", "expires_in": 3600})
    return None


@pytest.mark.asyncio
async def test_get_team_members_follows_continuation_and_skips_bots():
    pages = {
        None: {
            "members": [
                {"id": "29:alice", "aadObjectId": "aad-alice", "name": "Alice", "givenName": "Alice"},
                {"id": "28:some-bot", "name": "Bot"},
            ],
            "continuationToken": "page-2",
        },
        "page-2": {
            "members": [
                {
                    "id": "29:bob",
                    "aadObjectId": "aad-bob",
                    "name": "Bob",
                    "userPrincipalName": "bob@contoso.com",
                }
            ]
        },
    }
    seen_auth = []

    def handler(request: httpx.Request) -> httpx.Response:
        if (token := _token_response(request)) is not None:
            return token
        seen_auth.append(request.headers.get("Authorization"))
        assert request.url.path == "/amer/v3/conversations/team-1/pagedmembers"
        return httpx.Response(200, json=pages[request.url.params.get("continuationToken")])

    members = await _client(handler).get_team_members(make_team("team-1"))

    assert [(m.id, m.account_id) for m in members] == [
        ("aad-alice", "29:alice"),
        ("aad-bob", "29:bob"),
    ]
    assert members[1].user_principal_name == "bob@contoso.com"
    assert seen_auth == ["Bearer bf-token", "Bearer bf-token"]


@pytest.mark.asyncio
async def test_token_is_cached_between_calls():
    token_requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            token_requests.append(request)
            return httpx.Response(200, json={"access_token": "bf-token", "expires_in": 3600})
        return httpx.Response(200, json={"name": "Engineering"})

    client = _client(handler)
    await client.get_team_name(make_team())
    await client.get_team_name(make_team())

    assert len(token_requests) == 1


@pytest.mark.asyncio
async def test_get_team_name_falls_back_to_stored_name():
    def handler(request: httpx.Request) -> httpx.Response:
        token = _token_response(request)
        return token if token is not None else httpx.Response(200, json={"id": "team-1"})

    assert await _client(handler).get_team_name(make_team("team-1")) == "Team team-1"


@pytest.mark.asyncio
async def test_retries_throttled_requests():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if (token := _token_response(request)) is not None:
            return token
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(429)
        return httpx.Response(200, json={"name": "Engineering"})

    assert await _client(handler).get_team_name(make_team()) == "Engineering"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        token = _token_response(request)
        return token if token is not None else httpx.Response(503)

    with pytest.raises(TeamsConnectorError) as exc_info:
        await _client(handler).get_team_members(make_team())

    assert exc_info.value.status_code == 503
    assert exc_info.value.operation == "get_team_members"


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if (token := _token_response(request)) is not None:
            return token
        attempts.append(request)
        return httpx.Response(403)

    with pytest.raises(TeamsConnectorError) as exc_info:
        await _client(handler).get_team_name(make_team())

    assert exc_info.value.recoverable is False
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_create_conversation_and_send_message():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if (token := _token_response(request)) is not None:
            return token
        requests.append(request)
        if request.url.path == "/amer/v3/conversations":
            return httpx.Response(200, json={"id": "a:chat-1"})
        return httpx.Response(201, json={"id": "activity-1"})

    client = _client(handler)
    team = make_team()
    conversation_id = await client.create_personal_conversation(team, "29:alice")
    await client.send_message(team.service_url, conversation_id, "hello")

    create_body = json.loads(requests[0].content)
    assert create_body["members"] == [{"id": "29:alice"}]
    assert create_body["bot"] == {"id": "28:app-id"}
    assert create_body["channelData"] == {"tenant": {"id": "tenant-1"}}

    assert requests[1].url.path == "/amer/v3/conversations/a:chat-1/activities"
    assert json.loads(requests[1].content)["text"] == "hello"


@pytest.mark.asyncio
async def test_no_auth_header_without_app_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "Local"})

    await _client(handler, app_id="").get_team_name(make_team())

    assert len(seen) == 1
    assert "Authorization" not in seen[0].headers
