from __future__ import annotations

from typing import Any, Dict, List

import pytest

from obo_provision.config import AppConfig, PropagationConfig, config_from_dict
from obo_provision.locator import ResourceLocator
from obo_provision.mock_directory import MockDirectory
from obo_provision.propagation import PropagationWaiter
from obo_provision.reconciler import Reconciler


API_SCOPE_ID = "6b1c2f0e-8a4d-4c7b-9f3e-2d5a1b7c9e41"
USER_READ_ID = "e1fe6dd8-ba31-4d61-89e7-88639da4683d"
REDIRECT_URI = "https://localhost:5001/signin-oidc"


def build_raw_config(tmp_path) -> Dict[str, Any]:
    return {
        "directory": {"auth_mode": "mock"},
        "propagation": {"max_attempts": 5, "interval_seconds": 0.5},
        "output": {"descriptor_file": str(tmp_path / "output" / "provisioned.yaml")},
        "applications": [
            {
                "key": "api",
                "display_name": "obo-test-api",
                "identifier_uri": "api://{app_id}",
                "known_clients": ["web"],
                "scopes": [
                    {
                        "id": API_SCOPE_ID,
                        "value": "access_as_user",
                        "admin_consent_display_name": "Access the API",
                        "admin_consent_description": "Call the API as the signed-in user.",
                    }
                ],
                "required_permissions": [
                    {"resource": "graph", "id": USER_READ_ID, "name": "User.Read"},
                ],
            },
            {
                "key": "web",
                "display_name": "obo-test-web",
                "redirect_uris": [REDIRECT_URI],
                "enable_id_token_issuance": True,
                "required_permissions": [
                    {"resource": "graph", "id": USER_READ_ID, "name": "User.Read"},
                    {"resource": "@api", "name": "access_as_user"},
                ],
            },
        ],
    }


@pytest.fixture
def raw_config(tmp_path) -> Dict[str, Any]:
    return build_raw_config(tmp_path)


@pytest.fixture
def app_config(raw_config) -> AppConfig:
    return config_from_dict(raw_config)


@pytest.fixture
def directory() -> MockDirectory:
    return MockDirectory()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def waiter(directory, sleeps) -> PropagationWaiter:
    return PropagationWaiter(directory, PropagationConfig(max_attempts=5, interval_seconds=0.5), sleep=sleeps.append)


@pytest.fixture
def reconciler(directory, waiter) -> Reconciler:
    return Reconciler(directory, ResourceLocator(directory), waiter)
