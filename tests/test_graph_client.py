from __future__ import annotations

from unittest import mock

import pytest
import requests

from obo_provision.config import DirectoryConfig
from obo_provision.graph_client import (
    GraphApiError,
    GraphClient,
    GraphConfigurationError,
    MsalTokenProvider,
    build_token_provider,
)


class StaticTokens:
    caller_path = "/me"

    def acquire(self):
        return "token"


def _response(status_code=200, payload=None, text=""):
    response = mock.Mock()
    response.status_code = status_code
    response.content = b"{}" if payload is not None else b""
    response.text = text
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


@pytest.fixture
def client(session):
    return GraphClient(DirectoryConfig(tenant_id="tenant-1"), token_provider=StaticTokens(), session=session)


def test_request_sends_bearer_token_and_base_url(client, session):
    session.request.return_value = _response(payload={"id": "obj", "appId": "app"})

    assert client.get_application("obj")["appId"] == "app"

    method, url = session.request.call_args[0]
    assert method == "GET"
    assert url == "https://graph.microsoft.com/v1.0/applications/obj"
    assert session.request.call_args[1]["headers"]["Authorization"] == "Bearer token"


def test_error_body_is_parsed(client, session):
    session.request.return_value = _response(
        403, {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges."}}
    )

    with pytest.raises(GraphApiError) as excinfo:
        client.create_application({"displayName": "x"})

    assert excinfo.value.status_code == 403
    assert excinfo.value.error == "Authorization_RequestDenied"
    assert excinfo.value.is_forbidden


def test_connection_errors_become_transient(client, session):
    session.request.side_effect = requests.ConnectionError("reset")

    with pytest.raises(GraphApiError) as excinfo:
        client.list_subscribed_skus()
    assert excinfo.value.is_transient


def test_get_application_by_app_id_returns_none_on_404(client, session):
    session.request.return_value = _response(
        404, {"error": {"code": "Request_ResourceNotFound", "message": "missing"}}
    )
    assert client.get_application_by_app_id("app") is None


def test_no_content_responses(client, session):
    session.request.return_value = _response(204)
    client.delete_application("obj")
    assert session.request.call_args[0] == ("DELETE", "https://graph.microsoft.com/v1.0/applications/obj")


def test_list_applications_follows_next_link(client, session):
    next_link = "https://graph.microsoft.com/v1.0/applications?$skiptoken=abc"
    session.request.side_effect = [
        _response(payload={"value": [{"id": "1"}], "@odata.nextLink": next_link}),
        _response(payload={"value": [{"id": "2"}]}),
    ]

    assert [app["id"] for app in client.list_applications("O'Brien app")] == ["1", "2"]

    first, second = session.request.call_args_list
    assert first[1]["params"] == {"$filter": "displayName eq 'O''Brien app'"}
    assert second[0][1] == next_link
    assert second[1]["params"] is None


def test_directory_roles_ignore_groups(client, session):
    session.request.return_value = _response(
        payload={
            "value": [
                {"@odata.type": "#microsoft.graph.group", "displayName": "Engineering"},
                {"@odata.type": "#microsoft.graph.directoryRole", "displayName": "Application Administrator"},
            ]
        }
    )

    assert client.list_caller_directory_roles() == ["Application Administrator"]
    assert session.request.call_args[0][1].endswith("/me/transitiveMemberOf")


def test_add_password_returns_secret_text(client, session):
    session.request.return_value = _response(payload={"secretText": "abc", "keyId": "k"})

    assert client.add_password("obj", "obo-provision") == "abc"
    assert session.request.call_args[1]["json"] == {"passwordCredential": {"displayName": "obo-provision"}}


def test_grant_delegated_permissions_is_tenant_wide(client, session):
    session.request.return_value = _response(201, {"id": "grant"})

    client.grant_delegated_permissions("client-sp", "resource-sp", "User.Read")

    assert session.request.call_args[1]["json"]["consentType"] == "AllPrincipals"


def test_tenant_id_prefers_configuration(client, session):
    assert client.get_tenant_id() == "tenant-1"
    session.request.assert_not_called()


def test_build_token_provider_rejects_mock_mode():
    with pytest.raises(GraphConfigurationError):
        build_token_provider(DirectoryConfig(auth_mode="mock"))


def test_msal_provider_requires_credentials():
    with pytest.raises(GraphConfigurationError):
        MsalTokenProvider(DirectoryConfig(auth_mode="client_secret", tenant_id="t"))


@mock.patch("obo_provision.graph_client.msal.ConfidentialClientApplication")
def test_msal_provider_reports_token_errors(app_cls):
    app_cls.return_value.acquire_token_silent.return_value = None
    app_cls.return_value.acquire_token_for_client.return_value = {
        "error": "invalid_client",
        "error_description": "bad secret",
    }
    provider = MsalTokenProvider(
        DirectoryConfig(auth_mode="client_secret", tenant_id="t", client_id="c", client_secret="s")
    )

    with pytest.raises(GraphApiError, match="invalid_client"):
        provider.acquire()
    assert provider.caller_path == "/servicePrincipals(appId='c')"
