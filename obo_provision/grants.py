"""Permission requests, admin consent and the manual remediation checklist."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import ConsentConfig
from .errors import ConsentFailure, GrantError
from .graph_client import GraphApiError
from .models import (
    GRAPH_APP_ID,
    ApplicationDescriptor,
    ApplicationRecord,
    CapabilityReport,
    ConsentFailureReason,
    ConsentResult,
    GrantEdge,
    GrantType,
    PermissionGrant,
    RemediationStep,
)
from .propagation import PropagationWaiter


logger = logging.getLogger(__name__)

PORTAL_PATH = (
    "Azure portal > Microsoft Entra ID > App registrations > All applications > "
    "'{application}' > API permissions > Grant admin consent for {tenant}"
)


class CapabilityProbe:
    """Inspects the caller's directory roles and the tenant's license tier."""

    def __init__(self, directory: Any, config: ConsentConfig) -> None:
        self._directory = directory
        self._config = config

    def inspect(self) -> CapabilityReport:
        warnings: List[str] = []

        try:
            roles = tuple(self._directory.list_caller_directory_roles())
        except GraphApiError as exc:
            logger.warning("Unable to read the caller's directory roles: %s", exc)
            warnings.append(f"directory roles unavailable: {exc.error}")
            roles = ()

        premium: Optional[bool]
        try:
            plans = tuple(
                str(plan.get("servicePlanName"))
                for sku in self._directory.list_subscribed_skus()
                if str(sku.get("capabilityStatus") or "Enabled") == "Enabled"
                for plan in sku.get("servicePlans") or []
                if plan.get("servicePlanName")
            )
            wanted = {name.upper() for name in self._config.premium_service_plans}
            premium = any(plan.upper() in wanted for plan in plans)
        except GraphApiError as exc:
            logger.warning("Unable to read the tenant's subscriptions: %s", exc)
            warnings.append(f"license tier unknown: {exc.error}")
            plans = ()
            premium = None

        return CapabilityReport(roles=roles, service_plans=plans, premium=premium, warnings=tuple(warnings))

    def recommends_against_consent(self, report: CapabilityReport) -> bool:
        """Free and basic tenants have proven unreliable for automated consent."""

        return self._config.skip_on_free_tier and report.premium is False

    def is_admin(self, report: CapabilityReport) -> bool:
        return report.has_any_role(self._config.admin_roles)


class PermissionGrantSequencer:
    """Requests permissions in dependency order, then tries tenant-wide consent.

    A producer's scopes must be readable on the producer before any consumer
    references them. Consent is a soft dependency: failures come back as
    :class:`ConsentResult` values and turn into manual remediation steps.
    """

    def __init__(
        self,
        directory: Any,
        waiter: PropagationWaiter,
        probe: CapabilityProbe,
        descriptors: Iterable[ApplicationDescriptor],
        tenant_id: Optional[str] = None,
    ) -> None:
        self._directory = directory
        self._waiter = waiter
        self._probe = probe
        self._descriptors: Dict[str, ApplicationDescriptor] = {d.key: d for d in descriptors}
        self._records: Dict[str, ApplicationRecord] = {}
        self.tenant_id = tenant_id

    def track(self, record: ApplicationRecord) -> None:
        self._records[record.key] = record

    # ------------------------------------------------------------------ #
    # Permission requests                                                #
    # ------------------------------------------------------------------ #
    def scopes_committed(self, producer: ApplicationRecord, scope_ids: Sequence[str]) -> bool:
        wanted = set(scope_ids)

        def _probe() -> bool:
            payload = self._directory.get_application(producer.object_id)
            exposed = {
                str(scope.get("id"))
                for scope in (payload.get("api") or {}).get("oauth2PermissionScopes") or []
            }
            return wanted <= exposed

        return self._waiter.await_condition(f"Scopes of '{producer.display_name}'", _probe)

    def apply_grants(
        self,
        producers: Mapping[str, ApplicationRecord],
        consumer: ApplicationRecord,
        edges: Iterable[GrantEdge],
    ) -> None:
        descriptor = self._descriptor(consumer)
        for producer in producers.values():
            self.track(producer)
        self.track(consumer)

        for edge in edges:
            if edge.consumer != consumer.key:
                continue
            producer = producers.get(edge.producer)
            if producer is None:
                raise GrantError(
                    f"'{consumer.display_name}' requests scopes of '{edge.producer}' "
                    "before that application was provisioned."
                )
            if not self.scopes_committed(producer, edge.scope_ids):
                raise GrantError(
                    f"Scopes {', '.join(edge.scope_ids)} are not visible on '{producer.display_name}'; "
                    f"refusing to request them for '{consumer.display_name}'."
                )

        required = self.required_resource_access(descriptor)
        if not required:
            return
        try:
            self._directory.update_application(consumer.object_id, {"requiredResourceAccess": required})
        except GraphApiError as exc:
            raise GrantError(
                f"Requesting permissions for '{consumer.display_name}' was rejected: {exc}"
            ) from exc
        logger.info(
            "Requested %s permission(s) on %s resource(s) for '%s'.",
            len(descriptor.required_permissions),
            len(required),
            consumer.display_name,
        )

    def required_resource_access(self, descriptor: ApplicationDescriptor) -> List[Dict[str, Any]]:
        grouped: Dict[str, List[Dict[str, str]]] = {}
        for grant in descriptor.required_permissions:
            resource_app_id = self._resolve_resource(descriptor, grant)
            entries = grouped.setdefault(resource_app_id, [])
            entry = {"id": grant.permission_id, "type": grant.grant_type.resource_access_type}
            if entry not in entries:
                entries.append(entry)
        return [
            {"resourceAppId": resource_app_id, "resourceAccess": entries}
            for resource_app_id, entries in grouped.items()
        ]

    # ------------------------------------------------------------------ #
    # Admin consent                                                      #
    # ------------------------------------------------------------------ #
    def attempt_admin_consent(self, record: ApplicationRecord) -> ConsentResult:
        descriptor = self._descriptor(record)
        self.track(record)
        if not descriptor.required_permissions:
            return ConsentResult(
                record.key, attempted=False, succeeded=True, detail="No permissions requested."
            )

        report = self._probe.inspect()
        if self._probe.recommends_against_consent(report):
            logger.warning(
                "Tenant has no premium directory plan; skipping automated consent for '%s'.",
                record.display_name,
            )
            return ConsentResult(
                record.key,
                attempted=False,
                succeeded=False,
                reason=ConsentFailureReason.TENANT_LICENSE_RESTRICTION,
                detail="Automated admin consent is unreliable on free or basic tenants.",
            )
        if not self._probe.is_admin(report):
            logger.info(
                "Caller holds none of the configured admin roles; attempting consent for '%s' anyway.",
                record.display_name,
            )

        try:
            self._grant_consent(record, descriptor)
        except GraphApiError as exc:
            return self._failed(record, _classify(f"Consent lookups for '{record.display_name}'", exc))
        except ConsentFailure as exc:
            return self._failed(record, exc)

        logger.info("Admin consent granted for '%s'.", record.display_name)
        return ConsentResult(record.key, attempted=True, succeeded=True)

    def remediation_steps(self, record: ApplicationRecord, result: ConsentResult) -> List[RemediationStep]:
        if not result.needs_remediation:
            return []
        descriptor = self._descriptor(record)
        tenant = self.tenant_id or "your tenant"
        instructions = PORTAL_PATH.format(application=record.display_name, tenant=tenant)
        return [
            RemediationStep(
                application=record.display_name,
                permission=f"{self._resource_label(grant)}: {grant.label} ({grant.grant_type.value})",
                reason=result.reason,
                instructions=instructions,
            )
            for grant in descriptor.required_permissions
        ]

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    def _descriptor(self, record: ApplicationRecord) -> ApplicationDescriptor:
        try:
            return self._descriptors[record.key]
        except KeyError as exc:
            raise GrantError(f"No descriptor is configured for '{record.key}'.") from exc

    def _resolve_resource(self, descriptor: ApplicationDescriptor, grant: PermissionGrant) -> str:
        app_ids = {key: record.app_id for key, record in self._records.items()}
        try:
            return grant.resolve_resource(app_ids)
        except KeyError as exc:
            raise GrantError(
                f"'{descriptor.display_name}' references '{grant.resource}', which has not been provisioned."
            ) from exc

    def _resource_label(self, grant: PermissionGrant) -> str:
        producer = grant.producer_key
        if producer is not None and producer in self._descriptors:
            return self._descriptors[producer].display_name
        resource = grant.resolve_resource({}) if producer is None else grant.resource
        return "Microsoft Graph" if resource == GRAPH_APP_ID else resource

    def _service_principal(self, app_id: str, description: str) -> Dict[str, Any]:
        found: Dict[str, Any] = {}

        def _probe() -> bool:
            principal = self._directory.get_service_principal_by_app_id(app_id)
            if principal:
                found.update(principal)
            return bool(principal)

        if not self._waiter.await_condition(description, _probe):
            raise ConsentFailure(
                ConsentFailureReason.TRANSIENT_FAILURE,
                f"{description} is not visible in the directory yet.",
            )
        return found

    def _grant_consent(self, record: ApplicationRecord, descriptor: ApplicationDescriptor) -> None:
        client_sp_id = record.service_principal_id
        if not client_sp_id:
            principal = self._service_principal(
                record.app_id, f"Service principal of '{record.display_name}'"
            )
            client_sp_id = str(principal["id"])

        grouped: Dict[str, List[PermissionGrant]] = {}
        for grant in descriptor.required_permissions:
            grouped.setdefault(self._resolve_resource(descriptor, grant), []).append(grant)

        for resource_app_id, grants in grouped.items():
            resource = self._service_principal(resource_app_id, f"Service principal of {resource_app_id}")
            resource_sp_id = str(resource["id"])

            delegated = [grant for grant in grants if grant.grant_type is GrantType.DELEGATED]
            if delegated:
                scope = " ".join(self._scope_names(resource, delegated))
                self._consent_call(
                    f"Granting '{scope}' to '{record.display_name}'",
                    self._directory.grant_delegated_permissions,
                    client_sp_id,
                    resource_sp_id,
                    scope,
                )
            for grant in grants:
                if grant.grant_type is GrantType.APPLICATION:
                    self._consent_call(
                        f"Assigning app role {grant.label} to '{record.display_name}'",
                        self._directory.assign_app_role,
                        client_sp_id,
                        resource_sp_id,
                        grant.permission_id,
                    )

    @staticmethod
    def _scope_names(resource: Dict[str, Any], grants: Sequence[PermissionGrant]) -> List[str]:
        published = {
            str(scope.get("id")): str(scope.get("value"))
            for scope in resource.get("oauth2PermissionScopes") or []
            if scope.get("id") and scope.get("value")
        }
        names: List[str] = []
        for grant in grants:
            name = published.get(grant.permission_id) or grant.name
            if not name:
                raise ConsentFailure(
                    ConsentFailureReason.TRANSIENT_FAILURE,
                    f"Scope {grant.permission_id} is not published on "
                    f"{resource.get('displayName') or 'the resource'} yet.",
                )
            if name not in names:
                names.append(name)
        return names

    @staticmethod
    def _consent_call(action: str, func: Any, *args: Any) -> None:
        try:
            func(*args)
        except GraphApiError as exc:
            if exc.is_conflict:
                logger.info("%s: already in place.", action)
                return
            raise _classify(action, exc) from exc

    @staticmethod
    def _failed(record: ApplicationRecord, exc: ConsentFailure) -> ConsentResult:
        logger.warning(
            "Admin consent for '%s' failed (%s): %s", record.display_name, exc.reason.value, exc
        )
        return ConsentResult(
            record.key, attempted=True, succeeded=False, reason=exc.reason, detail=str(exc)
        )


def _classify(action: str, exc: GraphApiError) -> ConsentFailure:
    if exc.is_forbidden:
        return ConsentFailure(ConsentFailureReason.INSUFFICIENT_PRIVILEGE, f"{action} was denied: {exc}")
    return ConsentFailure(ConsentFailureReason.TRANSIENT_FAILURE, f"{action} failed: {exc}")


def format_checklist(steps: Sequence[RemediationStep]) -> str:
    """Render remediation steps as a numbered list the operator follows in order."""

    if not steps:
        return ""
    lines = [f"Admin consent is still required. Complete these {len(steps)} manual step(s) in order:"]
    for index, step in enumerate(steps, start=1):
        reason = f" [{step.reason.value}]" if step.reason else ""
        lines.append(f"  {index}. {step.application}: grant {step.permission}{reason}")
        lines.append(f"     {step.instructions}")
    return "\n".join(lines)


__all__ = ["CapabilityProbe", "PermissionGrantSequencer", "format_checklist"]
