"""Microsoft Graph directory client for application registrations and consent."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

import msal
import requests

from .azure_cli import AzureCliTokenProvider
from .config import DirectoryConfig


logger = logging.getLogger(__name__)

GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class GraphClientError(RuntimeError):
    """Base exception for directory client operations."""


class GraphConfigurationError(GraphClientError):
    """Raised when the directory client is not configured."""


class GraphApiError(GraphClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or self.error == "Request_ResourceNotFound"

    @property
    def is_forbidden(self) -> bool:
        return self.status_code in (401, 403) or self.error == "Authorization_RequestDenied"

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES or self.status_code == 0

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409 or "already exists" in self.description.lower()


class MsalTokenProvider:
    """App-only Graph tokens via the client-credentials flow."""

    def __init__(self, config: DirectoryConfig) -> None:
        if not config.has_client_credentials:
            raise GraphConfigurationError(
                "Client credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )
        self.caller_path = f"/servicePrincipals(appId='{config.client_id}')"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=f"https://login.microsoftonline.com/{config.tenant_id}",
        )
        self._lock = threading.Lock()

    def acquire(self) -> str:
        with self._lock:
            result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            raise GraphApiError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])


def build_token_provider(config: DirectoryConfig) -> Any:
    if config.auth_mode == "client_secret":
        return MsalTokenProvider(config)
    if config.auth_mode == "cli":
        return AzureCliTokenProvider(config)
    raise GraphConfigurationError(f"auth_mode '{config.auth_mode}' does not use Microsoft Graph.")


class GraphClient:
    """Thin Microsoft Graph client covering the calls a provisioning run needs."""

    def __init__(
        self,
        config: DirectoryConfig,
        token_provider: Optional[Any] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._tokens = token_provider or build_token_provider(config)
        self._session = session or requests.Session()

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                       #
    # ------------------------------------------------------------------ #
    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else self._config.graph_base_url + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._tokens.acquire()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        logger.debug("Graph %s %s", method, url)
        try:
            response = self._session.request(
                method,
                url,
                timeout=self._config.request_timeout,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise GraphApiError(0, "RequestFailed", str(exc)) from exc

        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise GraphApiError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_path: Optional[str] = path
        while next_path:
            payload = self._request("GET", next_path, params=params)
            items.extend(payload.get("value", []))
            next_path = payload.get("@odata.nextLink")
            params = None
        return items

    @staticmethod
    def _escape(value: str) -> str:
        return value.replace("'", "''")

    # ------------------------------------------------------------------ #
    # Applications                                                       #
    # ------------------------------------------------------------------ #
    def list_applications(self, display_name: str) -> List[Dict[str, Any]]:
        params = {"$filter": f"displayName eq '{self._escape(display_name)}'"}
        return self._paged("/applications", params=params)

    def get_application(self, object_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/applications/{object_id}")

    def get_application_by_app_id(self, app_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", f"/applications(appId='{self._escape(app_id)}')")
        except GraphApiError as exc:
            if exc.is_not_found:
                return None
            raise

    def create_application(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/applications", json=payload)

    def update_application(self, object_id: str, payload: Dict[str, Any]) -> None:
        self._request("PATCH", f"/applications/{object_id}", json=payload)

    def delete_application(self, object_id: str) -> None:
        self._request("DELETE", f"/applications/{object_id}")

    def add_password(self, object_id: str, display_name: str) -> str:
        payload = {"passwordCredential": {"displayName": display_name}}
        result = self._request("POST", f"/applications/{object_id}/addPassword", json=payload)
        secret = result.get("secretText")
        if not secret:
            raise GraphApiError(200, "MissingSecret", "addPassword returned no secretText.")
        return str(secret)

    # ------------------------------------------------------------------ #
    # Service principals and grants                                      #
    # ------------------------------------------------------------------ #
    def create_service_principal(self, app_id: str) -> Dict[str, Any]:
        return self._request("POST", "/servicePrincipals", json={"appId": app_id})

    def get_service_principal_by_app_id(self, app_id: str) -> Optional[Dict[str, Any]]:
        params = {
            "$filter": f"appId eq '{self._escape(app_id)}'",
            "$select": "id,appId,displayName,oauth2PermissionScopes,appRoles",
        }
        values = self._request("GET", "/servicePrincipals", params=params).get("value") or []
        return values[0] if values else None

    def grant_delegated_permissions(
        self, client_sp_id: str, resource_sp_id: str, scope: str
    ) -> Dict[str, Any]:
        payload = {
            "clientId": client_sp_id,
            "consentType": "AllPrincipals",
            "resourceId": resource_sp_id,
            "scope": scope,
        }
        return self._request("POST", "/oauth2PermissionGrants", json=payload)

    def assign_app_role(
        self, client_sp_id: str, resource_sp_id: str, app_role_id: str
    ) -> Dict[str, Any]:
        payload = {
            "principalId": client_sp_id,
            "resourceId": resource_sp_id,
            "appRoleId": app_role_id,
        }
        return self._request(
            "POST", f"/servicePrincipals/{client_sp_id}/appRoleAssignments", json=payload
        )

    # ------------------------------------------------------------------ #
    # Caller and tenant capabilities                                     #
    # ------------------------------------------------------------------ #
    def list_caller_directory_roles(self) -> List[str]:
        members = self._paged(
            f"{self._tokens.caller_path}/transitiveMemberOf",
            params={"$select": "id,displayName"},
        )
        return [
            str(entry.get("displayName"))
            for entry in members
            if entry.get("@odata.type") == "#microsoft.graph.directoryRole" and entry.get("displayName")
        ]

    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        result = self._request(
            "GET",
            "/subscribedSkus",
            params={"$select": "skuId,skuPartNumber,capabilityStatus,servicePlans"},
        )
        return result.get("value", [])

    def get_tenant_id(self) -> str:
        if self._config.tenant_id:
            return self._config.tenant_id
        values = self._request("GET", "/organization", params={"$select": "id"}).get("value") or []
        if not values:
            raise GraphApiError(200, "NoOrganization", "Graph returned no organization for the caller.")
        return str(values[0]["id"])


__all__ = [
    "GraphApiError",
    "GraphClient",
    "GraphClientError",
    "GraphConfigurationError",
    "MsalTokenProvider",
    "build_token_provider",
]
