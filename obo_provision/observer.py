"""Hooks the orchestrator calls between steps."""
from __future__ import annotations

import logging


logger = logging.getLogger(__name__)


class StepObserver:
    """Default observer: logs progress and approves every destructive step.

    Interactive front ends override :meth:`confirm` to ask the operator.
    """

    def step_started(self, step: str) -> None:
        logger.info("Starting: %s", step)

    def step_completed(self, step: str) -> None:
        logger.debug("Finished: %s", step)

    def confirm(self, prompt: str) -> bool:
        return True


__all__ = ["StepObserver"]
