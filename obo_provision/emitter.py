"""Writes the provisioned identifiers and secrets for the scaffolding stage."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml

from .models import ApplicationDescriptor, ApplicationRecord


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
AUTHORITY_BASE = "https://login.microsoftonline.com"


class ConfigEmitter:
    """Serializes a run's records into a versioned YAML descriptor.

    The file is overwritten on every run and holds client secrets in
    cleartext; keep it out of source control.
    """

    def __init__(
        self,
        path: Path,
        tenant_id: str,
        descriptors: Iterable[ApplicationDescriptor] = (),
    ) -> None:
        self.path = path
        self.tenant_id = tenant_id
        self._descriptors = {descriptor.key: descriptor for descriptor in descriptors}

    def emit(
        self,
        records: Iterable[ApplicationRecord],
        secrets: Optional[Mapping[str, str]] = None,
    ) -> Path:
        secrets = secrets or {}
        applications: Dict[str, Any] = {}
        for record in records:
            applications[record.key] = self._application_entry(
                record, secrets.get(record.key, record.client_secret)
            )

        payload = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "tenant_id": self.tenant_id,
            "authority": f"{AUTHORITY_BASE}/{self.tenant_id}",
            "applications": applications,
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False, indent=2)
        tmp_path.replace(self.path)
        logger.info("Wrote %s application(s) to %s.", len(applications), self.path)
        return self.path

    def _application_entry(self, record: ApplicationRecord, secret: Optional[str]) -> Dict[str, Any]:
        descriptor = self._descriptors.get(record.key)
        identifier_uri = record.identifier_uris[0] if record.identifier_uris else None
        scopes = []
        if descriptor is not None and identifier_uri:
            scopes = [f"{identifier_uri}/{scope.value}" for scope in descriptor.scopes]
        return {
            "display_name": record.display_name,
            "client_id": record.app_id,
            "object_id": record.object_id,
            "service_principal_id": record.service_principal_id,
            "identifier_uri": identifier_uri,
            "redirect_uris": list(record.redirect_uris),
            "scopes": scopes,
            "client_secret": secret,
        }


def load_descriptor(path: Path) -> Dict[str, Any]:
    """Read a previously emitted descriptor, rejecting unknown schema versions."""

    with path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    version = payload.get("schema_version")
    if version != SCHEMA_VERSION:
        raise ValueError(f"Unsupported descriptor schema_version {version!r} in {path}.")
    return payload


__all__ = ["ConfigEmitter", "SCHEMA_VERSION", "load_descriptor"]
