"""Microsoft Graph client for enrollment profile discovery.

Authentication is delegated to azure-identity; no token is ever persisted.
All requests are read-only, carry an explicit timeout and are retried with
exponential backoff on network errors and throttling.

Scopes:
- DeviceManagementServiceConfig.Read.All (enrollment profiles)
- Organization.Read.All (tenant id)
- Domain.Read.All (default tenant domain)
"""

import logging
import os
from typing import Any

import requests
from azure.core.exceptions import AzureError
from azure.identity import (
    AzureCliCredential,
    ClientSecretCredential,
    InteractiveBrowserCredential,
)

from hvfleet.errors import AuthenticationError, DirectoryApiError
from hvfleet.log_sanitizer import LogSanitizer
from hvfleet.retry_config import get_retry_config
from hvfleet.retry_handler import (
    TransientHTTPError,
    retry_with_exponential_backoff,
    should_retry_http_error,
)

logger = logging.getLogger(__name__)

GRAPH_ROOT = "https://graph.microsoft.com"
PROFILES_URL = f"{GRAPH_ROOT}/beta/deviceManagement/windowsAutopilotDeploymentProfiles"
ORGANIZATION_URL = f"{GRAPH_ROOT}/v1.0/organization"
DOMAINS_URL = f"{GRAPH_ROOT}/v1.0/domains"
NEXT_LINK = "@odata.nextLink"

READ_SCOPES = (
    f"{GRAPH_ROOT}/DeviceManagementServiceConfig.Read.All",
    f"{GRAPH_ROOT}/Organization.Read.All",
    f"{GRAPH_ROOT}/Domain.Read.All",
)
DEFAULT_SCOPE = f"{GRAPH_ROOT}/.default"

# Public client registered by Microsoft for Graph command line tools
GRAPH_CLI_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"


class GraphAuthenticator:
    """Acquire Graph bearer tokens through azure-identity.

    Methods:
    - interactive: browser sign-in requesting the three read scopes
    - cli: reuse the Azure CLI login (``.default`` scope)
    - service_principal: AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET
    """

    def __init__(
        self,
        method: str = "interactive",
        client_id: str | None = None,
        tenant_id: str | None = None,
    ):
        self.method = method
        self.client_id = client_id
        self.tenant_id = tenant_id

    def _create_credential(self) -> tuple[Any, tuple[str, ...]]:
        if self.method == "interactive":
            kwargs: dict[str, Any] = {"client_id": self.client_id or GRAPH_CLI_CLIENT_ID}
            if self.tenant_id:
                kwargs["tenant_id"] = self.tenant_id
            return InteractiveBrowserCredential(**kwargs), READ_SCOPES

        if self.method == "cli":
            return AzureCliCredential(), (DEFAULT_SCOPE,)

        if self.method == "service_principal":
            tenant_id = self.tenant_id or os.environ.get("AZURE_TENANT_ID")
            client_id = self.client_id or os.environ.get("AZURE_CLIENT_ID")
            client_secret = os.environ.get("AZURE_CLIENT_SECRET")
            if not (tenant_id and client_id and client_secret):
                raise AuthenticationError(
                    "Service principal authentication requires AZURE_TENANT_ID, "
                    "AZURE_CLIENT_ID and AZURE_CLIENT_SECRET"
                )
            return ClientSecretCredential(tenant_id, client_id, client_secret), (DEFAULT_SCOPE,)

        raise AuthenticationError(f"Unsupported authentication method: {self.method}")

    def get_token(self) -> str:
        """Return a bearer token for Graph.

        Raises:
            AuthenticationError: If the handshake fails
        """
        try:
            credential, scopes = self._create_credential()
            token = credential.get_token(*scopes)
        except AuthenticationError:
            raise
        except (AzureError, ValueError) as e:
            raise AuthenticationError(
                LogSanitizer.create_safe_error_message(e, "Graph authentication failed")
            ) from e

        logger.info(f"Authenticated to Microsoft Graph ({self.method})")
        return token.token


class GraphClient:
    """Read-only Graph API calls used by the enrollment profile fetcher."""

    def __init__(
        self,
        authenticator: GraphAuthenticator,
        timeout: int = 30,
        session: requests.Session | None = None,
    ):
        self.authenticator = authenticator
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: str | None = None

    def _headers(self) -> dict[str, str]:
        if self._token is None:
            self._token = self.authenticator.get_token()
        return {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}

    def get(self, url: str) -> dict[str, Any]:
        """GET a Graph URL and return the decoded JSON object.

        Raises:
            AuthenticationError: On 401/403
            DirectoryApiError: On other errors, after retries are exhausted
        """
        config = get_retry_config()

        @retry_with_exponential_backoff(
            max_attempts=config.api_max_attempts,
            initial_delay=config.api_initial_delay,
            max_delay=config.api_max_delay,
            jitter=config.jitter_enabled,
        )
        def _get() -> requests.Response:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
            if should_retry_http_error(response.status_code):
                raise TransientHTTPError(
                    response.status_code, f"HTTP {response.status_code} from {url}"
                )
            return response

        try:
            response = _get()
        except (requests.RequestException, TransientHTTPError) as e:
            raise DirectoryApiError(
                LogSanitizer.create_safe_error_message(e, f"Graph request failed: {url}")
            ) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Graph denied access to {url} (HTTP {response.status_code}). "
                "Check that the account has the required read permissions."
            )
        if response.status_code >= 400:
            raise DirectoryApiError(
                f"Graph request failed: {url} (HTTP {response.status_code}): "
                f"{LogSanitizer.sanitize(response.text[:200])}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise DirectoryApiError(f"Graph returned invalid JSON for {url}") from e

    def list_all(self, url: str) -> list[dict[str, Any]]:
        """Follow @odata.nextLink until absent, concatenating every page."""
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        pages = 0
        while next_url:
            page = self.get(next_url)
            items.extend(page.get("value", []))
            next_url = page.get(NEXT_LINK)
            pages += 1
        logger.debug(f"Fetched {len(items)} items in {pages} page(s) from {url}")
        return items

    def list_enrollment_profiles(self) -> list[dict[str, Any]]:
        return self.list_all(PROFILES_URL)

    def get_organization(self) -> dict[str, Any]:
        organizations = self.get(ORGANIZATION_URL).get("value", [])
        if not organizations:
            raise DirectoryApiError("Graph returned no organization record")
        return organizations[0]

    def get_default_domain(self) -> str:
        for domain in self.list_all(DOMAINS_URL):
            if domain.get("isDefault"):
                return domain["id"]
        raise DirectoryApiError("Graph returned no default domain")


__all__ = ["GraphAuthenticator", "GraphClient", "PROFILES_URL", "READ_SCOPES"]
