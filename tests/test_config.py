from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from obo_provision.config import (
    ConfigurationError,
    _apply_environment_overrides,
    config_from_dict,
    ensure_default_config,
    load_config,
)

from .conftest import API_SCOPE_ID


def test_scope_names_resolve_to_producer_ids(app_config):
    web = app_config.application("web")
    reference = next(grant for grant in web.required_permissions if grant.producer_key == "api")
    assert reference.permission_id == API_SCOPE_ID


def test_applications_are_ordered_producers_first(raw_config):
    raw_config["applications"].reverse()
    config = config_from_dict(raw_config)
    assert [descriptor.key for descriptor in config.ordered_applications()] == ["api", "web"]


def test_unknown_scope_name_is_rejected(raw_config):
    raw_config["applications"][1]["required_permissions"][1]["name"] = "missing"
    with pytest.raises(ConfigurationError, match="without an id"):
        config_from_dict(raw_config)


def test_unknown_known_client_is_rejected(raw_config):
    raw_config["applications"][0]["known_clients"] = ["ghost"]
    with pytest.raises(ConfigurationError, match="ghost"):
        config_from_dict(raw_config)


def test_duplicate_keys_are_rejected(raw_config):
    raw_config["applications"][1]["key"] = "api"
    with pytest.raises(ConfigurationError, match="Duplicate"):
        config_from_dict(raw_config)


def test_applications_section_is_required(raw_config):
    raw_config["applications"] = []
    with pytest.raises(ConfigurationError):
        config_from_dict(raw_config)


def test_client_secret_mode_requires_credentials(raw_config):
    raw_config["directory"] = {"auth_mode": "client_secret", "tenant_id": "t"}
    with pytest.raises(ConfigurationError, match="client_secret"):
        config_from_dict(raw_config)


def test_unknown_auth_mode_is_rejected(raw_config):
    raw_config["directory"] = {"auth_mode": "kerberos"}
    with pytest.raises(ConfigurationError):
        config_from_dict(raw_config)


def test_propagation_bounds_are_validated(raw_config):
    raw_config["propagation"] = {"max_attempts": 0}
    with pytest.raises(ConfigurationError):
        config_from_dict(raw_config)


def test_environment_overrides_nest_on_double_underscore(raw_config):
    merged = _apply_environment_overrides(
        raw_config,
        environ={
            "OBO_DIRECTORY__TENANT_ID": "contoso-tenant",
            "OBO_PROPAGATION__MAX_ATTEMPTS": "7",
            "OBO_CONFIG": "ignored.yaml",
            "UNRELATED": "x",
        },
    )
    config = config_from_dict(merged)
    assert config.directory.tenant_id == "contoso-tenant"
    assert config.propagation.max_attempts == 7
    assert config.directory.auth_mode == "mock"


def test_consent_roles_accept_comma_separated_strings(raw_config):
    raw_config["consent"] = {"admin_roles": "Global Administrator, Application Administrator"}
    config = config_from_dict(raw_config)
    assert config.consent.admin_roles == ("Global Administrator", "Application Administrator")


def test_load_config_reads_yaml_file(tmp_path, raw_config):
    path = tmp_path / "provision.yaml"
    path.write_text(yaml.safe_dump(raw_config), encoding="utf-8")
    config = load_config(path)
    assert [descriptor.key for descriptor in config.applications] == ["api", "web"]
    assert config.output.descriptor_file == Path(raw_config["output"]["descriptor_file"])


def test_load_config_reports_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_config(tmp_path / "absent.yaml")


def test_ensure_default_config_copies_template(tmp_path):
    template = tmp_path / "example.yaml"
    template.write_text("applications: []\n", encoding="utf-8")
    target = ensure_default_config(tmp_path / "config" / "provision.yaml", template)
    assert target.read_text(encoding="utf-8") == "applications: []\n"


def test_shipped_example_config_is_valid():
    example = Path(__file__).resolve().parent.parent / "config" / "provision.example.yaml"
    config = load_config(example)
    assert {descriptor.key for descriptor in config.applications} == {"api", "web"}
    assert config.grant_edges[0].producer == "api"


def test_app_role_reference_to_run_application_is_rejected(raw_config):
    raw_config["applications"][1]["required_permissions"].append(
        {"resource": "@api", "id": "11111111-2222-3333-4444-555555555555", "type": "Application"}
    )
    with pytest.raises(ConfigurationError, match="delegated scopes only"):
        config_from_dict(raw_config)
