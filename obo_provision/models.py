"""Data models for application descriptors, directory records and consent outcomes."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
WELL_KNOWN_RESOURCES = {"graph": GRAPH_APP_ID, "microsoft-graph": GRAPH_APP_ID}
APP_REFERENCE_PREFIX = "@"


def _unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


class GrantType(str, Enum):
    DELEGATED = "Delegated"
    APPLICATION = "Application"

    @classmethod
    def parse(cls, raw: Any) -> "GrantType":
        cleaned = str(raw or cls.DELEGATED.value).strip().lower()
        for member in cls:
            if member.value.lower() == cleaned:
                return member
        # Graph's own vocabulary for requiredResourceAccess entries.
        if cleaned == "scope":
            return cls.DELEGATED
        if cleaned == "role":
            return cls.APPLICATION
        raise ValueError(f"Unknown grant type '{raw}'. Use Delegated or Application.")

    @property
    def resource_access_type(self) -> str:
        return "Scope" if self is GrantType.DELEGATED else "Role"


class ConsentFailureReason(str, Enum):
    INSUFFICIENT_PRIVILEGE = "InsufficientPrivilege"
    TENANT_LICENSE_RESTRICTION = "TenantLicenseRestriction"
    TRANSIENT_FAILURE = "TransientFailure"


@dataclass(frozen=True)
class ScopeDefinition:
    """A delegated permission exposed by an API application."""

    id: str
    value: str
    admin_consent_display_name: str
    admin_consent_description: str
    user_consent_display_name: Optional[str] = None
    user_consent_description: Optional[str] = None
    enabled: bool = True
    type: str = "User"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScopeDefinition":
        value = str(data.get("value") or data.get("name") or "").strip()
        scope_id = str(data.get("id") or "").strip()
        if not scope_id or not value:
            raise ValueError("Exposed scopes need both an 'id' and a 'value'.")
        admin_name = str(data.get("admin_consent_display_name") or value)
        admin_description = str(data.get("admin_consent_description") or admin_name)
        return cls(
            id=scope_id,
            value=value,
            admin_consent_display_name=admin_name,
            admin_consent_description=admin_description,
            user_consent_display_name=data.get("user_consent_display_name"),
            user_consent_description=data.get("user_consent_description"),
            enabled=bool(data.get("enabled", True)),
            type=str(data.get("type") or "User"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "admin_consent_display_name": self.admin_consent_display_name,
            "admin_consent_description": self.admin_consent_description,
            "user_consent_display_name": self.user_consent_display_name,
            "user_consent_description": self.user_consent_description,
            "enabled": self.enabled,
            "type": self.type,
        }

    def to_graph(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "adminConsentDisplayName": self.admin_consent_display_name,
            "adminConsentDescription": self.admin_consent_description,
            "userConsentDisplayName": self.user_consent_display_name or self.admin_consent_display_name,
            "userConsentDescription": self.user_consent_description or self.admin_consent_description,
            "isEnabled": self.enabled,
            "type": self.type,
        }


@dataclass(frozen=True)
class PermissionGrant:
    """A permission an application requests on a resource."""

    resource: str
    permission_id: str
    grant_type: GrantType = GrantType.DELEGATED
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionGrant":
        resource = str(data.get("resource") or "").strip()
        if not resource:
            raise ValueError("Required permissions need a 'resource'.")
        return cls(
            resource=resource,
            permission_id=str(data.get("id") or data.get("permission_id") or "").strip(),
            grant_type=GrantType.parse(data.get("type")),
            name=(str(data["name"]).strip() if data.get("name") else None),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "id": self.permission_id,
            "name": self.name,
            "type": self.grant_type.value,
        }

    @property
    def producer_key(self) -> Optional[str]:
        """Key of the descriptor this permission points at, for ``@key`` resources."""

        if self.resource.startswith(APP_REFERENCE_PREFIX):
            return self.resource[len(APP_REFERENCE_PREFIX) :]
        return None

    @property
    def label(self) -> str:
        return self.name or self.permission_id

    def resolve_resource(self, app_ids: Mapping[str, str]) -> str:
        producer = self.producer_key
        if producer is not None:
            try:
                return app_ids[producer]
            except KeyError as exc:
                raise KeyError(f"Application '{producer}' has not been provisioned yet.") from exc
        return WELL_KNOWN_RESOURCES.get(self.resource.lower(), self.resource)


@dataclass(frozen=True)
class ApplicationDescriptor:
    """Desired state of one identity application."""

    key: str
    display_name: str
    redirect_uris: Tuple[str, ...] = ()
    identifier_uri: Optional[str] = None
    scopes: Tuple[ScopeDefinition, ...] = ()
    required_permissions: Tuple[PermissionGrant, ...] = ()
    known_clients: Tuple[str, ...] = ()
    create_secret: bool = True
    enable_id_token_issuance: bool = False
    sign_in_audience: str = "AzureADMyOrg"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationDescriptor":
        display_name = str(data.get("display_name") or "").strip()
        if not display_name:
            raise ValueError("Every application needs a 'display_name'.")
        key = str(data.get("key") or display_name).strip()
        return cls(
            key=key,
            display_name=display_name,
            redirect_uris=tuple(_unique_preserve(data.get("redirect_uris") or [])),
            identifier_uri=(str(data["identifier_uri"]).strip() if data.get("identifier_uri") else None),
            scopes=tuple(ScopeDefinition.from_dict(entry) for entry in data.get("scopes") or []),
            required_permissions=tuple(
                PermissionGrant.from_dict(entry) for entry in data.get("required_permissions") or []
            ),
            known_clients=tuple(_unique_preserve(data.get("known_clients") or [])),
            create_secret=bool(data.get("create_secret", True)),
            enable_id_token_issuance=bool(data.get("enable_id_token_issuance", False)),
            sign_in_audience=str(data.get("sign_in_audience") or "AzureADMyOrg"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "display_name": self.display_name,
            "redirect_uris": list(self.redirect_uris),
            "identifier_uri": self.identifier_uri,
            "scopes": [scope.to_dict() for scope in self.scopes],
            "required_permissions": [grant.to_dict() for grant in self.required_permissions],
            "known_clients": list(self.known_clients),
            "create_secret": self.create_secret,
            "enable_id_token_issuance": self.enable_id_token_issuance,
            "sign_in_audience": self.sign_in_audience,
        }

    @property
    def scope_ids(self) -> Tuple[str, ...]:
        return tuple(scope.id for scope in self.scopes)

    def resolve_identifier_uri(self, app_id: str) -> Optional[str]:
        if not self.identifier_uri:
            return None
        return self.identifier_uri.format(app_id=app_id)


@dataclass(frozen=True)
class ApplicationRecord:
    """Observed state of an application as returned by the directory."""

    key: str
    display_name: str
    app_id: str
    object_id: str
    service_principal_id: Optional[str] = None
    redirect_uris: Tuple[str, ...] = ()
    identifier_uris: Tuple[str, ...] = ()
    scope_ids: Tuple[str, ...] = ()
    client_secret: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_graph(
        cls,
        payload: Dict[str, Any],
        key: Optional[str] = None,
        service_principal_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> "ApplicationRecord":
        web = payload.get("web") or {}
        api = payload.get("api") or {}
        display_name = str(payload.get("displayName") or "")
        return cls(
            key=key or display_name,
            display_name=display_name,
            app_id=str(payload["appId"]),
            object_id=str(payload["id"]),
            service_principal_id=service_principal_id,
            redirect_uris=tuple(web.get("redirectUris") or ()),
            identifier_uris=tuple(payload.get("identifierUris") or ()),
            scope_ids=tuple(
                str(scope["id"]) for scope in api.get("oauth2PermissionScopes") or () if scope.get("id")
            ),
            client_secret=client_secret,
        )


@dataclass(frozen=True)
class NotFound:
    display_name: str


@dataclass(frozen=True)
class SingleMatch:
    record: ApplicationRecord


@dataclass(frozen=True)
class AmbiguousMatch:
    records: Tuple[ApplicationRecord, ...]

    @property
    def canonical(self) -> ApplicationRecord:
        """The first match in the directory's default ordering."""

        return self.records[0]


LookupResult = Union[NotFound, SingleMatch, AmbiguousMatch]


@dataclass(frozen=True)
class ConsentResult:
    application_key: str
    attempted: bool
    succeeded: bool
    reason: Optional[ConsentFailureReason] = None
    detail: Optional[str] = None

    @property
    def needs_remediation(self) -> bool:
        return not self.succeeded


@dataclass(frozen=True)
class GrantEdge:
    """The consumer requests scopes the producer exposes, so the producer goes first."""

    producer: str
    consumer: str
    scope_ids: Tuple[str, ...]


@dataclass(frozen=True)
class CapabilityReport:
    roles: Tuple[str, ...] = ()
    service_plans: Tuple[str, ...] = ()
    premium: Optional[bool] = None
    warnings: Tuple[str, ...] = ()

    def has_any_role(self, candidates: Iterable[str]) -> bool:
        wanted = {candidate.lower() for candidate in candidates}
        return any(role.lower() in wanted for role in self.roles)


@dataclass(frozen=True)
class RemediationStep:
    application: str
    permission: str
    reason: Optional[ConsentFailureReason]
    instructions: str


def build_grant_edges(descriptors: Iterable[ApplicationDescriptor]) -> List[GrantEdge]:
    """Derive producer/consumer edges from ``@key`` permission references."""

    by_key = {descriptor.key: descriptor for descriptor in descriptors}
    edges: List[GrantEdge] = []
    for consumer in by_key.values():
        grouped: Dict[str, List[str]] = {}
        for grant in consumer.required_permissions:
            producer_key = grant.producer_key
            if producer_key is None:
                continue
            producer = by_key.get(producer_key)
            if producer is None:
                raise ValueError(
                    f"Application '{consumer.key}' requests a permission on unknown application '{producer_key}'."
                )
            if producer_key == consumer.key:
                raise ValueError(f"Application '{consumer.key}' cannot request its own scope.")
            if grant.grant_type is not GrantType.DELEGATED:
                raise ValueError(
                    f"Application '{consumer.key}' requests app role {grant.label} on '{producer_key}'; "
                    "applications in this run expose delegated scopes only."
                )
            if grant.permission_id not in producer.scope_ids:
                raise ValueError(
                    f"Application '{consumer.key}' requests scope {grant.label} "
                    f"which '{producer_key}' does not expose."
                )
            grouped.setdefault(producer_key, []).append(grant.permission_id)
        for producer_key, scope_ids in grouped.items():
            edges.append(
                GrantEdge(
                    producer=producer_key,
                    consumer=consumer.key,
                    scope_ids=tuple(_unique_preserve(scope_ids)),
                )
            )
    return edges


def order_descriptors(
    descriptors: Iterable[ApplicationDescriptor], edges: Iterable[GrantEdge]
) -> List[ApplicationDescriptor]:
    """Order descriptors so producers come before their consumers, keeping input order otherwise."""

    ordered_input = list(descriptors)
    pending: Dict[str, set[str]] = {descriptor.key: set() for descriptor in ordered_input}
    for edge in edges:
        pending[edge.consumer].add(edge.producer)

    result: List[ApplicationDescriptor] = []
    placed: set[str] = set()
    while len(result) < len(ordered_input):
        progressed = False
        for descriptor in ordered_input:
            if descriptor.key in placed or pending[descriptor.key] - placed:
                continue
            result.append(descriptor)
            placed.add(descriptor.key)
            progressed = True
        if not progressed:
            remaining = sorted(key for key in pending if key not in placed)
            raise ValueError(f"Circular permission references between: {', '.join(remaining)}.")
    return result


__all__ = [
    "AmbiguousMatch",
    "ApplicationDescriptor",
    "ApplicationRecord",
    "CapabilityReport",
    "ConsentFailureReason",
    "ConsentResult",
    "GRAPH_APP_ID",
    "GrantEdge",
    "GrantType",
    "LookupResult",
    "NotFound",
    "PermissionGrant",
    "RemediationStep",
    "ScopeDefinition",
    "SingleMatch",
    "build_grant_edges",
    "order_descriptors",
]
