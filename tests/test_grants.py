from __future__ import annotations

import pytest

from obo_provision.config import ConsentConfig, PropagationConfig
from obo_provision.errors import GrantError
from obo_provision.grants import CapabilityProbe, PermissionGrantSequencer, format_checklist
from obo_provision.graph_client import GraphApiError
from obo_provision.locator import ResourceLocator
from obo_provision.mock_directory import MockDirectory
from obo_provision.models import GRAPH_APP_ID, ConsentFailureReason, ConsentResult
from obo_provision.propagation import PropagationWaiter
from obo_provision.reconciler import Reconciler


def _provision(app_config, directory, sleeps, max_attempts=5):
    waiter = PropagationWaiter(
        directory, PropagationConfig(max_attempts=max_attempts, interval_seconds=0.5), sleep=sleeps.append
    )
    reconciler = Reconciler(directory, ResourceLocator(directory), waiter)
    records = {
        descriptor.key: reconciler.reconcile(descriptor) for descriptor in app_config.ordered_applications()
    }
    sequencer = PermissionGrantSequencer(
        directory,
        waiter,
        CapabilityProbe(directory, app_config.consent),
        app_config.applications,
        tenant_id="contoso",
    )
    for record in records.values():
        sequencer.track(record)
    return sequencer, records


def _request_all(sequencer, records, app_config):
    for descriptor in app_config.ordered_applications():
        producers = {
            edge.producer: records[edge.producer]
            for edge in app_config.grant_edges
            if edge.consumer == descriptor.key
        }
        sequencer.apply_grants(producers, records[descriptor.key], app_config.grant_edges)


def test_apply_grants_requests_graph_and_producer_scopes(app_config, sleeps):
    directory = MockDirectory()
    sequencer, records = _provision(app_config, directory, sleeps)
    web = records["web"]

    sequencer.apply_grants({"api": records["api"]}, web, app_config.grant_edges)

    required = directory.get_application(web.object_id)["requiredResourceAccess"]
    by_resource = {entry["resourceAppId"]: entry["resourceAccess"] for entry in required}
    assert set(by_resource) == {GRAPH_APP_ID, records["api"].app_id}
    assert by_resource[records["api"].app_id] == [{"id": records["api"].scope_ids[0], "type": "Scope"}]


def test_grant_waits_for_producer_scopes(app_config, sleeps):
    directory = MockDirectory(scope_lag=100)
    sequencer, records = _provision(app_config, directory, sleeps, max_attempts=3)
    web = records["web"]
    marker = len(directory.calls)

    with pytest.raises(GrantError, match="not visible"):
        sequencer.apply_grants({"api": records["api"]}, web, app_config.grant_edges)

    later = directory.calls[marker:]
    assert ("update_application", web.object_id) not in later
    assert [name for name, _ in later].count("get_application") == 3


def test_grant_refuses_unprovisioned_producer(app_config, sleeps):
    sequencer, records = _provision(app_config, MockDirectory(), sleeps)
    with pytest.raises(GrantError, match="before that application was provisioned"):
        sequencer.apply_grants({}, records["web"], app_config.grant_edges)


def test_admin_consent_grants_tenant_wide(app_config, sleeps):
    directory = MockDirectory()
    sequencer, records = _provision(app_config, directory, sleeps)
    _request_all(sequencer, records, app_config)

    result = sequencer.attempt_admin_consent(records["web"])

    assert result == ConsentResult("web", attempted=True, succeeded=True)
    grants = directory.delegated_grants()
    assert {grant["scope"] for grant in grants} == {"User.Read", "access_as_user"}
    assert all(grant["consentType"] == "AllPrincipals" for grant in grants)


def test_repeated_consent_treats_conflicts_as_success(app_config, sleeps):
    directory = MockDirectory()
    sequencer, records = _provision(app_config, directory, sleeps)
    _request_all(sequencer, records, app_config)

    sequencer.attempt_admin_consent(records["api"])
    result = sequencer.attempt_admin_consent(records["api"])

    assert result.succeeded
    assert len(directory.delegated_grants()) == 1


def test_free_tier_skips_consent_without_calling_the_directory(app_config, sleeps):
    directory = MockDirectory(subscribed_skus=[])
    sequencer, records = _provision(app_config, directory, sleeps)

    result = sequencer.attempt_admin_consent(records["web"])

    assert result.attempted is False
    assert result.reason is ConsentFailureReason.TENANT_LICENSE_RESTRICTION
    assert "grant_delegated_permissions" not in [name for name, _ in directory.calls]


def test_free_tier_check_can_be_disabled():
    directory = MockDirectory(subscribed_skus=[])
    probe = CapabilityProbe(directory, ConsentConfig(skip_on_free_tier=False))
    assert probe.recommends_against_consent(probe.inspect()) is False


def test_unknown_license_tier_does_not_block_consent(app_config):
    class NoSkus(MockDirectory):
        def list_subscribed_skus(self):
            raise GraphApiError(403, "Authorization_RequestDenied", "no access")

    probe = CapabilityProbe(NoSkus(), app_config.consent)
    report = probe.inspect()
    assert report.premium is None
    assert report.warnings
    assert probe.recommends_against_consent(report) is False


def test_missing_role_is_insufficient_privilege(app_config, sleeps):
    directory = MockDirectory(caller_roles=[])
    sequencer, records = _provision(app_config, directory, sleeps)
    _request_all(sequencer, records, app_config)

    result = sequencer.attempt_admin_consent(records["web"])

    assert result.attempted is True
    assert result.succeeded is False
    assert result.reason is ConsentFailureReason.INSUFFICIENT_PRIVILEGE


def test_service_errors_are_transient(app_config, sleeps):
    directory = MockDirectory(consent_error=GraphApiError(503, "ServiceUnavailable", "try later"))
    sequencer, records = _provision(app_config, directory, sleeps)

    result = sequencer.attempt_admin_consent(records["api"])

    assert result.reason is ConsentFailureReason.TRANSIENT_FAILURE
    assert result.needs_remediation


def test_remediation_lists_every_required_permission(app_config, sleeps):
    directory = MockDirectory(caller_roles=[])
    sequencer, records = _provision(app_config, directory, sleeps)
    result = sequencer.attempt_admin_consent(records["web"])

    steps = sequencer.remediation_steps(records["web"], result)

    assert [step.permission for step in steps] == [
        "Microsoft Graph: User.Read (Delegated)",
        "obo-test-api: access_as_user (Delegated)",
    ]
    assert all("contoso" in step.instructions for step in steps)
    assert sequencer.remediation_steps(records["web"], ConsentResult("web", True, True)) == []


def test_format_checklist_numbers_steps(app_config, sleeps):
    directory = MockDirectory(caller_roles=[])
    sequencer, records = _provision(app_config, directory, sleeps)
    steps = sequencer.remediation_steps(records["web"], sequencer.attempt_admin_consent(records["web"]))

    checklist = format_checklist(steps)

    lines = checklist.splitlines()
    assert lines[0] == "Admin consent is still required. Complete these 2 manual step(s) in order:"
    assert lines[1].startswith("  1. obo-test-web: grant Microsoft Graph: User.Read")
    assert "[InsufficientPrivilege]" in lines[1]
    assert lines[3].startswith("  2. ")
    assert format_checklist([]) == ""


class RejectsPermissionRequests(MockDirectory):
    def update_application(self, object_id, payload):
        if "requiredResourceAccess" in payload:
            self.calls.append(("update_application", object_id))
            raise GraphApiError(400, "Request_BadRequest", "Invalid requiredResourceAccess.")
        super().update_application(object_id, payload)


def test_rejected_permission_request_raises_grant_error(app_config, sleeps):
    directory = RejectsPermissionRequests()
    sequencer, records = _provision(app_config, directory, sleeps)

    with pytest.raises(GrantError, match="Invalid requiredResourceAccess"):
        sequencer.apply_grants({"api": records["api"]}, records["web"], app_config.grant_edges)
    assert directory.get_application(records["web"].object_id)["requiredResourceAccess"] == []
