"""Unit tests for graph_client module."""

from unittest.mock import Mock, patch

import pytest
import requests
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError

from hvfleet.errors import AuthenticationError, DirectoryApiError
from hvfleet.graph_client import (
    DOMAINS_URL,
    PROFILES_URL,
    READ_SCOPES,
    GraphAuthenticator,
    GraphClient,
)


def _response(status_code: int = 200, payload: dict | None = None) -> Mock:
    response = Mock(status_code=status_code, text="")
    response.json.return_value = payload or {}
    return response


@pytest.fixture
def authenticator():
    auth = Mock()
    auth.get_token.return_value = "token-abc"
    return auth


@pytest.fixture
def session():
    return Mock()


class TestGraphAuthenticator:
    @patch("hvfleet.graph_client.InteractiveBrowserCredential")
    def test_interactive_requests_read_scopes(self, mock_credential):
        mock_credential.return_value.get_token.return_value = Mock(token="tok")

        token = GraphAuthenticator(method="interactive").get_token()

        assert token == "tok"
        mock_credential.return_value.get_token.assert_called_once_with(*READ_SCOPES)

    @patch("hvfleet.graph_client.AzureCliCredential")
    def test_cli_uses_default_scope(self, mock_credential):
        mock_credential.return_value.get_token.return_value = Mock(token="tok")

        GraphAuthenticator(method="cli").get_token()

        mock_credential.return_value.get_token.assert_called_once_with(
            "https://graph.microsoft.com/.default"
        )

    @patch("hvfleet.graph_client.AzureCliCredential")
    def test_handshake_failure_is_authentication_error(self, mock_credential):
        mock_credential.return_value.get_token.side_effect = ClientAuthenticationError(
            "Please run az login"
        )

        with pytest.raises(AuthenticationError, match="Graph authentication failed"):
            GraphAuthenticator(method="cli").get_token()

    @patch("hvfleet.graph_client.AzureCliCredential")
    def test_transport_failure_is_authentication_error(self, mock_credential):
        mock_credential.return_value.get_token.side_effect = ServiceRequestError(
            "connection refused"
        )

        with pytest.raises(AuthenticationError, match="connection refused"):
            GraphAuthenticator(method="cli").get_token()

    def test_service_principal_requires_environment(self, monkeypatch):
        for name in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(AuthenticationError, match="AZURE_CLIENT_SECRET"):
            GraphAuthenticator(method="service_principal").get_token()

    def test_unknown_method(self):
        with pytest.raises(AuthenticationError, match="Unsupported"):
            GraphAuthenticator(method="kerberos").get_token()


class TestGraphClientPagination:
    def test_follows_next_link_until_absent(self, authenticator, session):
        session.get.side_effect = [
            _response(payload={"value": [{"id": "p-1"}], "@odata.nextLink": "https://next/1"}),
            _response(payload={"value": [{"id": "p-2"}], "@odata.nextLink": "https://next/2"}),
            _response(payload={"value": [{"id": "p-3"}]}),
        ]
        client = GraphClient(authenticator, session=session)

        profiles = client.list_enrollment_profiles()

        assert [p["id"] for p in profiles] == ["p-1", "p-2", "p-3"]
        urls = [call.args[0] for call in session.get.call_args_list]
        assert urls == [PROFILES_URL, "https://next/1", "https://next/2"]

    def test_token_is_acquired_once(self, authenticator, session):
        session.get.return_value = _response(payload={"value": []})
        client = GraphClient(authenticator, session=session)

        client.list_enrollment_profiles()
        client.list_enrollment_profiles()

        authenticator.get_token.assert_called_once()
        headers = session.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer token-abc"

    def test_every_call_has_timeout(self, authenticator, session):
        session.get.return_value = _response(payload={"value": []})
        GraphClient(authenticator, timeout=12, session=session).list_enrollment_profiles()

        assert session.get.call_args.kwargs["timeout"] == 12


class TestGraphClientErrors:
    def test_retries_throttling_then_succeeds(self, authenticator, session):
        session.get.side_effect = [
            _response(status_code=429),
            _response(status_code=503),
            _response(payload={"value": [{"id": "p-1"}]}),
        ]
        client = GraphClient(authenticator, session=session)

        with patch("hvfleet.retry_handler.time.sleep"):
            profiles = client.list_enrollment_profiles()

        assert len(profiles) == 1
        assert session.get.call_count == 3

    def test_retries_connection_errors_then_gives_up(self, authenticator, session):
        session.get.side_effect = requests.ConnectionError("connection reset")
        client = GraphClient(authenticator, session=session)

        with patch("hvfleet.retry_handler.time.sleep"):
            with pytest.raises(DirectoryApiError, match="Graph request failed"):
                client.list_enrollment_profiles()

        assert session.get.call_count == 3

    def test_forbidden_is_authentication_error(self, authenticator, session):
        session.get.return_value = _response(status_code=403)
        client = GraphClient(authenticator, session=session)

        with pytest.raises(AuthenticationError, match="403"):
            client.list_enrollment_profiles()
        assert session.get.call_count == 1

    def test_bad_request_is_not_retried(self, authenticator, session):
        session.get.return_value = _response(status_code=400)
        client = GraphClient(authenticator, session=session)

        with pytest.raises(DirectoryApiError, match="HTTP 400"):
            client.list_enrollment_profiles()
        assert session.get.call_count == 1


class TestOrganizationAndDomain:
    def test_default_domain(self, authenticator, session):
        session.get.return_value = _response(
            payload={
                "value": [
                    {"id": "contoso.com", "isDefault": False},
                    {"id": "contoso.onmicrosoft.com", "isDefault": True},
                ]
            }
        )
        client = GraphClient(authenticator, session=session)

        assert client.get_default_domain() == "contoso.onmicrosoft.com"
        assert session.get.call_args.args[0] == DOMAINS_URL

    def test_no_default_domain(self, authenticator, session):
        session.get.return_value = _response(payload={"value": [{"id": "x", "isDefault": False}]})

        with pytest.raises(DirectoryApiError, match="default domain"):
            GraphClient(authenticator, session=session).get_default_domain()

    def test_organization(self, authenticator, session):
        session.get.return_value = _response(payload={"value": [{"id": "tenant-guid"}]})

        assert GraphClient(authenticator, session=session).get_organization()["id"] == (
            "tenant-guid"
        )
