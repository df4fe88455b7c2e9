"""Display-name lookups against the identity directory."""
from __future__ import annotations

import logging
from typing import Any, Optional

from .models import AmbiguousMatch, ApplicationRecord, LookupResult, NotFound, SingleMatch


logger = logging.getLogger(__name__)


class ResourceLocator:
    """Finds application registrations by display name. Read-only."""

    def __init__(self, directory: Any) -> None:
        self._directory = directory

    def lookup(self, display_name: str) -> LookupResult:
        matches = [
            ApplicationRecord.from_graph(payload)
            for payload in self._directory.list_applications(display_name)
            if payload.get("displayName") == display_name
        ]
        if not matches:
            return NotFound(display_name)
        if len(matches) == 1:
            return SingleMatch(matches[0])
        return AmbiguousMatch(tuple(matches))

    def find(self, display_name: str) -> Optional[ApplicationRecord]:
        result = self.lookup(display_name)
        if isinstance(result, SingleMatch):
            return result.record
        if isinstance(result, AmbiguousMatch):
            logger.warning(
                "%s applications share the display name '%s'; using %s.",
                len(result.records),
                display_name,
                result.canonical.app_id,
            )
            return result.canonical
        return None


__all__ = ["ResourceLocator"]
