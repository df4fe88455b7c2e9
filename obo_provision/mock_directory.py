"""In-memory directory emulator for offline rehearsals of a provisioning run."""
from __future__ import annotations

import copy
import secrets
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .models import GRAPH_APP_ID
from .graph_client import GraphApiError


MOCK_TENANT_ID = "00000000-0000-0000-0000-000000000001"
CONSENT_ROLES = {"global administrator", "privileged role administrator", "cloud application administrator"}

_GRAPH_PRINCIPAL = {
    "appId": GRAPH_APP_ID,
    "displayName": "Microsoft Graph",
    "oauth2PermissionScopes": [
        {"id": "e1fe6dd8-ba31-4d61-89e7-88639da4683d", "value": "User.Read"},
        {"id": "37f7f235-527c-4136-accd-4a02d197296e", "value": "openid"},
        {"id": "14dad69e-099b-42c9-810b-d002981feec1", "value": "profile"},
        {"id": "7427e0e9-2fba-42fe-b0c0-848c9e6a8182", "value": "offline_access"},
    ],
    "appRoles": [
        {"id": "df021288-bdef-4463-88db-98f22de89214", "value": "User.Read.All"},
    ],
}

_PREMIUM_SKU = {
    "skuId": "078d2b04-f1bd-4111-bbd4-b4b1b354cef4",
    "skuPartNumber": "AAD_PREMIUM",
    "capabilityStatus": "Enabled",
    "servicePlans": [{"servicePlanName": "AAD_PREMIUM"}],
}


def _not_found(what: str) -> GraphApiError:
    return GraphApiError(404, "Request_ResourceNotFound", f"Resource '{what}' does not exist.")


class MockDirectory:
    """Lightweight directory emulator used when no tenant should be touched.

    Mirrors the :class:`~obo_provision.graph_client.GraphClient` surface.
    ``propagation_lag`` hides new applications from that many reads, and
    ``scope_lag`` serves stale exposed scopes for that many reads after an
    update, which is how the real directory's eventual consistency shows up.
    """

    def __init__(
        self,
        data_file: Optional[Path] = None,
        caller_roles: Optional[Iterable[str]] = None,
        subscribed_skus: Optional[List[Dict[str, Any]]] = None,
        propagation_lag: int = 0,
        scope_lag: int = 0,
        consent_error: Optional[GraphApiError] = None,
    ) -> None:
        self.data_file = data_file
        self.propagation_lag = propagation_lag
        self.scope_lag = scope_lag
        self.consent_error = consent_error
        self.calls: List[Tuple[str, str]] = []
        self._hidden: Dict[str, int] = {}
        self._stale_scopes: Dict[str, Tuple[int, List[Dict[str, Any]]]] = {}
        self._data: Dict[str, Any] = {
            "tenant_id": MOCK_TENANT_ID,
            "caller_roles": ["Global Administrator"],
            "subscribed_skus": [copy.deepcopy(_PREMIUM_SKU)],
            "applications": [],
            "service_principals": [],
            "oauth2_permission_grants": [],
            "app_role_assignments": [],
        }
        self._load()
        if caller_roles is not None:
            self._data["caller_roles"] = list(caller_roles)
        if subscribed_skus is not None:
            self._data["subscribed_skus"] = list(subscribed_skus)
        if not self._find_principal(GRAPH_APP_ID):
            self._data["service_principals"].append(
                {"id": str(uuid.uuid4()), **copy.deepcopy(_GRAPH_PRINCIPAL)}
            )

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            for key, value in loaded.items():
                self._data[key] = value

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    # ------------------------------------------------------------------ #
    # Internal lookups                                                   #
    # ------------------------------------------------------------------ #
    def _find_app(self, object_id: str) -> Optional[Dict[str, Any]]:
        return next((app for app in self._data["applications"] if app["id"] == object_id), None)

    def _find_app_by_app_id(self, app_id: str) -> Optional[Dict[str, Any]]:
        return next((app for app in self._data["applications"] if app["appId"] == app_id), None)

    def _find_principal(self, app_id: str) -> Optional[Dict[str, Any]]:
        return next((sp for sp in self._data["service_principals"] if sp["appId"] == app_id), None)

    def _readable(self, app: Dict[str, Any]) -> bool:
        remaining = self._hidden.get(app["appId"], 0)
        if remaining > 0:
            self._hidden[app["appId"]] = remaining - 1
            return False
        return True

    def _view(self, app: Dict[str, Any]) -> Dict[str, Any]:
        view = copy.deepcopy(app)
        stale = self._stale_scopes.get(app["id"])
        if stale:
            remaining, scopes = stale
            view.setdefault("api", {})["oauth2PermissionScopes"] = copy.deepcopy(scopes)
            if remaining <= 1:
                del self._stale_scopes[app["id"]]
            else:
                self._stale_scopes[app["id"]] = (remaining - 1, scopes)
        return view

    def _authorize_consent(self) -> None:
        if self.consent_error is not None:
            raise self.consent_error
        roles = {str(role).lower() for role in self._data["caller_roles"]}
        if not roles & CONSENT_ROLES:
            raise GraphApiError(
                403, "Authorization_RequestDenied", "Insufficient privileges to complete the operation."
            )

    # ------------------------------------------------------------------ #
    # Applications                                                       #
    # ------------------------------------------------------------------ #
    def list_applications(self, display_name: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_applications", display_name))
        return [
            self._view(app)
            for app in self._data["applications"]
            if app["displayName"] == display_name and self._hidden.get(app["appId"], 0) == 0
        ]

    def get_application(self, object_id: str) -> Dict[str, Any]:
        self.calls.append(("get_application", object_id))
        app = self._find_app(object_id)
        if app is None or not self._readable(app):
            raise _not_found(object_id)
        return self._view(app)

    def get_application_by_app_id(self, app_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_application_by_app_id", app_id))
        app = self._find_app_by_app_id(app_id)
        if app is None or not self._readable(app):
            return None
        return self._view(app)

    def create_application(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        display_name = str(payload.get("displayName") or "").strip()
        self.calls.append(("create_application", display_name))
        if not display_name:
            raise GraphApiError(400, "Request_BadRequest", "displayName is required.")
        app = {
            "id": str(uuid.uuid4()),
            "appId": str(uuid.uuid4()),
            "displayName": display_name,
            "signInAudience": payload.get("signInAudience", "AzureADMyOrg"),
            "identifierUris": [],
            "web": {"redirectUris": [], "implicitGrantSettings": {"enableIdTokenIssuance": False}},
            "api": {"oauth2PermissionScopes": [], "knownClientApplications": []},
            "requiredResourceAccess": [],
            "passwordCredentials": [],
        }
        self._data["applications"].append(app)
        if self.propagation_lag:
            self._hidden[app["appId"]] = self.propagation_lag
        self._save()
        return copy.deepcopy(app)

    def update_application(self, object_id: str, payload: Dict[str, Any]) -> None:
        self.calls.append(("update_application", object_id))
        app = self._find_app(object_id)
        if app is None or not self._readable(app):
            raise _not_found(object_id)

        for uri in payload.get("identifierUris") or []:
            clash = any(
                uri in (other.get("identifierUris") or [])
                for other in self._data["applications"]
                if other["id"] != object_id
            )
            if clash:
                raise GraphApiError(
                    400, "Request_BadRequest", f"Another object with the same value for identifierUris '{uri}'."
                )
        for uri in (payload.get("web") or {}).get("redirectUris") or []:
            if not (uri.startswith("https://") or uri.startswith("http://localhost")):
                raise GraphApiError(400, "Request_BadRequest", f"Invalid redirect URI '{uri}'.")

        if "api" in payload and self.scope_lag:
            previous = copy.deepcopy((app.get("api") or {}).get("oauth2PermissionScopes") or [])
            self._stale_scopes[object_id] = (self.scope_lag, previous)
        for key, value in payload.items():
            app[key] = copy.deepcopy(value)
        self._save()

    def delete_application(self, object_id: str) -> None:
        self.calls.append(("delete_application", object_id))
        app = self._find_app(object_id)
        if app is None:
            raise _not_found(object_id)
        self._data["applications"].remove(app)
        principal = self._find_principal(app["appId"])
        if principal is not None:
            self._data["service_principals"].remove(principal)
            for key in ("oauth2_permission_grants", "app_role_assignments"):
                self._data[key] = [
                    entry
                    for entry in self._data[key]
                    if principal["id"] not in (entry.get("clientId"), entry.get("principalId"), entry.get("resourceId"))
                ]
        self._save()

    def add_password(self, object_id: str, display_name: str) -> str:
        self.calls.append(("add_password", object_id))
        app = self._find_app(object_id)
        if app is None:
            raise _not_found(object_id)
        secret = secrets.token_urlsafe(30)
        app["passwordCredentials"].append({"displayName": display_name, "hint": secret[:3]})
        self._save()
        return secret

    # ------------------------------------------------------------------ #
    # Service principals and grants                                      #
    # ------------------------------------------------------------------ #
    def create_service_principal(self, app_id: str) -> Dict[str, Any]:
        self.calls.append(("create_service_principal", app_id))
        app = self._find_app_by_app_id(app_id)
        if app is None:
            raise _not_found(app_id)
        if self._find_principal(app_id):
            raise GraphApiError(409, "Request_MultipleObjectsWithSameKeyValue", "Service principal already exists.")
        principal = {"id": str(uuid.uuid4()), "appId": app_id, "displayName": app["displayName"]}
        self._data["service_principals"].append(principal)
        self._save()
        return copy.deepcopy(principal)

    def get_service_principal_by_app_id(self, app_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_service_principal_by_app_id", app_id))
        principal = self._find_principal(app_id)
        if principal is None:
            return None
        view = copy.deepcopy(principal)
        app = self._find_app_by_app_id(app_id)
        if app is not None:
            view["oauth2PermissionScopes"] = copy.deepcopy(
                (app.get("api") or {}).get("oauth2PermissionScopes") or []
            )
            view.setdefault("appRoles", [])
        return view

    def grant_delegated_permissions(
        self, client_sp_id: str, resource_sp_id: str, scope: str
    ) -> Dict[str, Any]:
        self.calls.append(("grant_delegated_permissions", client_sp_id))
        self._authorize_consent()
        for grant in self._data["oauth2_permission_grants"]:
            if grant["clientId"] == client_sp_id and grant["resourceId"] == resource_sp_id:
                raise GraphApiError(409, "Request_BadRequest", "Permission entry already exists.")
        grant = {
            "id": str(uuid.uuid4()),
            "clientId": client_sp_id,
            "consentType": "AllPrincipals",
            "resourceId": resource_sp_id,
            "scope": scope,
        }
        self._data["oauth2_permission_grants"].append(grant)
        self._save()
        return copy.deepcopy(grant)

    def assign_app_role(
        self, client_sp_id: str, resource_sp_id: str, app_role_id: str
    ) -> Dict[str, Any]:
        self.calls.append(("assign_app_role", client_sp_id))
        self._authorize_consent()
        assignment = {
            "id": str(uuid.uuid4()),
            "principalId": client_sp_id,
            "resourceId": resource_sp_id,
            "appRoleId": app_role_id,
        }
        self._data["app_role_assignments"].append(assignment)
        self._save()
        return copy.deepcopy(assignment)

    def delegated_grants(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._data["oauth2_permission_grants"])

    # ------------------------------------------------------------------ #
    # Caller and tenant capabilities                                     #
    # ------------------------------------------------------------------ #
    def list_caller_directory_roles(self) -> List[str]:
        return [str(role) for role in self._data["caller_roles"]]

    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._data["subscribed_skus"])

    def get_tenant_id(self) -> str:
        return str(self._data["tenant_id"])


__all__ = ["MockDirectory", "MOCK_TENANT_ID"]
