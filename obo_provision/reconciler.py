"""Delete-and-recreate reconciliation of application registrations."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import OutputConfig
from .errors import PropagationTimeout, ProvisioningError, RunAborted
from .graph_client import GraphApiError
from .locator import ResourceLocator
from .models import (
    AmbiguousMatch,
    ApplicationDescriptor,
    ApplicationRecord,
    NotFound,
    SingleMatch,
)
from .observer import StepObserver
from .propagation import PropagationWaiter


logger = logging.getLogger(__name__)

ACCESS_TOKEN_VERSION = 2


def api_block(descriptor: ApplicationDescriptor, known_client_ids: Iterable[str] = ()) -> Dict[str, Any]:
    """The full ``api`` complex property; Graph replaces it wholesale on PATCH."""

    return {
        "requestedAccessTokenVersion": ACCESS_TOKEN_VERSION,
        "oauth2PermissionScopes": [scope.to_graph() for scope in descriptor.scopes],
        "knownClientApplications": list(known_client_ids),
    }


class Reconciler:
    """Brings one application registration to its descriptor's state.

    Existing registrations with the same display name are always deleted and
    recreated rather than patched in place. This orphans their old secrets
    and consent, so deletion goes through the observer's confirmation hook.
    """

    def __init__(
        self,
        directory: Any,
        locator: ResourceLocator,
        waiter: PropagationWaiter,
        output: Optional[OutputConfig] = None,
        observer: Optional[StepObserver] = None,
    ) -> None:
        self._directory = directory
        self._locator = locator
        self._waiter = waiter
        self._output = output or OutputConfig()
        self._observer = observer or StepObserver()

    def reconcile(self, descriptor: ApplicationDescriptor) -> ApplicationRecord:
        self._delete_existing(descriptor)

        created = self._call(
            f"Creating application '{descriptor.display_name}'",
            self._directory.create_application,
            {"displayName": descriptor.display_name, "signInAudience": descriptor.sign_in_audience},
        )
        app_id = str(created["appId"])
        object_id = str(created["id"])
        logger.info("Created '%s' with app id %s.", descriptor.display_name, app_id)

        if not self._waiter.await_visible(app_id):
            raise PropagationTimeout(
                f"Application '{descriptor.display_name}' ({app_id})", self._waiter.max_attempts
            )

        for action, payload in self._attribute_updates(descriptor, app_id):
            self._call(action, self._directory.update_application, object_id, payload)

        service_principal_id = self._create_service_principal(descriptor, app_id)

        secret = None
        if descriptor.create_secret:
            secret = self._call(
                f"Creating a client secret for '{descriptor.display_name}'",
                self._directory.add_password,
                object_id,
                self._output.secret_display_name,
            )

        payload = self._call(
            f"Reading back '{descriptor.display_name}'", self._directory.get_application, object_id
        )
        return ApplicationRecord.from_graph(
            payload,
            key=descriptor.key,
            service_principal_id=service_principal_id,
            client_secret=secret,
        )

    def remove(self, descriptor: ApplicationDescriptor) -> int:
        """Delete every registration carrying the descriptor's display name."""

        return self._delete_existing(descriptor)

    def link_known_clients(
        self,
        record: ApplicationRecord,
        descriptor: ApplicationDescriptor,
        client_app_ids: Iterable[str],
    ) -> None:
        client_ids = list(client_app_ids)
        self._call(
            f"Registering known clients on '{descriptor.display_name}'",
            self._directory.update_application,
            record.object_id,
            {"api": api_block(descriptor, client_ids)},
        )
        logger.info(
            "'%s' now lists %s known client application(s).", descriptor.display_name, len(client_ids)
        )

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    def _existing_records(self, display_name: str) -> Tuple[ApplicationRecord, ...]:
        result = self._locator.lookup(display_name)
        if isinstance(result, NotFound):
            return ()
        if isinstance(result, SingleMatch):
            return (result.record,)
        if isinstance(result, AmbiguousMatch):
            logger.warning(
                "%s applications share the display name '%s'; all of them will be deleted.",
                len(result.records),
                display_name,
            )
            return result.records
        return ()

    def _delete_existing(self, descriptor: ApplicationDescriptor) -> int:
        existing = self._existing_records(descriptor.display_name)
        if not existing:
            return 0

        ids = ", ".join(record.app_id for record in existing)
        if not self._observer.confirm(
            f"Delete {len(existing)} existing application(s) named '{descriptor.display_name}' ({ids})?"
        ):
            raise RunAborted(f"Deletion of '{descriptor.display_name}' was declined.")

        for record in existing:
            self._call(
                f"Deleting application {record.app_id}",
                self._directory.delete_application,
                record.object_id,
            )
            logger.info("Deleted '%s' (%s).", descriptor.display_name, record.app_id)
        return len(existing)

    def _attribute_updates(
        self, descriptor: ApplicationDescriptor, app_id: str
    ) -> List[Tuple[str, Dict[str, Any]]]:
        updates: List[Tuple[str, Dict[str, Any]]] = []
        identifier_uri = descriptor.resolve_identifier_uri(app_id)
        if identifier_uri:
            updates.append(
                (f"Setting identifier URI {identifier_uri}", {"identifierUris": [identifier_uri]})
            )
        if descriptor.redirect_uris or descriptor.enable_id_token_issuance:
            updates.append(
                (
                    f"Setting redirect URIs on '{descriptor.display_name}'",
                    {
                        "web": {
                            "redirectUris": list(descriptor.redirect_uris),
                            "implicitGrantSettings": {
                                "enableIdTokenIssuance": descriptor.enable_id_token_issuance,
                            },
                        }
                    },
                )
            )
        updates.append(
            (f"Exposing scopes on '{descriptor.display_name}'", {"api": api_block(descriptor)})
        )
        return updates

    def _create_service_principal(self, descriptor: ApplicationDescriptor, app_id: str) -> str:
        principal = self._call(
            f"Creating the service principal for '{descriptor.display_name}'",
            self._directory.create_service_principal,
            app_id,
        )
        visible = self._waiter.await_condition(
            f"Service principal of '{descriptor.display_name}'",
            lambda: self._directory.get_service_principal_by_app_id(app_id) is not None,
        )
        if not visible:
            logger.warning(
                "Continuing although the service principal of '%s' is not readable yet.",
                descriptor.display_name,
            )
        return str(principal["id"])

    @staticmethod
    def _call(action: str, func: Any, *args: Any) -> Any:
        try:
            return func(*args)
        except GraphApiError as exc:
            raise ProvisioningError(f"{action} was rejected: {exc}") from exc


__all__ = ["Reconciler", "api_block"]
