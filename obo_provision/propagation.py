"""Bounded polling for directory eventual consistency."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from .config import PropagationConfig
from .errors import PropagationTimeout
from .graph_client import GraphApiError


logger = logging.getLogger(__name__)


class PropagationWaiter:
    """Polls the directory at a fixed interval until a write becomes readable.

    Newly created applications are not immediately visible to read APIs, and
    mutating them too early fails with spurious not-found errors. The waiter
    never backs off exponentially: it makes at most ``max_attempts`` checks and
    sleeps ``interval`` between them, so the caller blocks for no longer than
    ``max_attempts * interval``.
    """

    def __init__(
        self,
        directory: Any,
        config: PropagationConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._directory = directory
        self._config = config
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def await_condition(
        self,
        description: str,
        probe: Callable[[], bool],
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> bool:
        attempts = max_attempts if max_attempts is not None else self._config.max_attempts
        delay = interval if interval is not None else self._config.interval_seconds

        for attempt in range(1, attempts + 1):
            try:
                if probe():
                    logger.debug("%s visible after %s attempt(s).", description, attempt)
                    return True
            except GraphApiError as exc:
                if not (exc.is_not_found or exc.is_transient):
                    raise
                logger.debug("%s not readable yet: %s", description, exc)
            if attempt < attempts:
                self._sleep(delay)

        logger.warning("%s still not visible after %s attempt(s).", description, attempts)
        return False

    def await_visible(
        self,
        app_id: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> bool:
        return self.await_condition(
            f"Application {app_id}",
            lambda: self._directory.get_application_by_app_id(app_id) is not None,
            max_attempts=max_attempts,
            interval=interval,
        )

    def require_visible(self, app_id: str) -> None:
        if not self.await_visible(app_id):
            raise PropagationTimeout(f"Application {app_id}", self.max_attempts)


__all__ = ["PropagationWaiter"]
