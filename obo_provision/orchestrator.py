"""Run-level sequencing of reconcile, grant, consent and emit steps."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import AppConfig
from .emitter import ConfigEmitter
from .errors import ProvisioningError, ProvisioningRunError
from .grants import CapabilityProbe, PermissionGrantSequencer, format_checklist
from .graph_client import GraphApiError
from .locator import ResourceLocator
from .models import ApplicationRecord, ConsentResult, RemediationStep
from .observer import StepObserver
from .propagation import PropagationWaiter
from .reconciler import Reconciler


logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    records: Dict[str, ApplicationRecord] = field(default_factory=dict)
    consent: List[ConsentResult] = field(default_factory=list)
    remediation: List[RemediationStep] = field(default_factory=list)
    descriptor_path: Optional[Path] = None

    @property
    def checklist(self) -> str:
        return format_checklist(self.remediation)


class ProvisioningOrchestrator:
    """Runs the provisioning steps strictly in order and halts on the first fatal error."""

    def __init__(
        self,
        config: AppConfig,
        directory: Any,
        observer: Optional[StepObserver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.directory = directory
        self.observer = observer or StepObserver()
        self.locator = ResourceLocator(directory)
        self.waiter = PropagationWaiter(directory, config.propagation, sleep=sleep)
        self.reconciler = Reconciler(
            directory, self.locator, self.waiter, output=config.output, observer=self.observer
        )
        self.probe = CapabilityProbe(directory, config.consent)
        self._tenant_id = config.directory.tenant_id
        self.sequencer = PermissionGrantSequencer(
            directory, self.waiter, self.probe, config.applications, tenant_id=self._tenant_id
        )

    def _step(self, name: str, func: Callable[..., Any], *args: Any) -> Any:
        self.observer.step_started(name)
        try:
            result = func(*args)
        except ProvisioningRunError as exc:
            raise exc.with_step(name)
        except GraphApiError as exc:
            raise ProvisioningError(str(exc), step=name) from exc
        self.observer.step_completed(name)
        return result

    def tenant_id(self) -> str:
        if not self._tenant_id:
            self._tenant_id = self._step("Resolve tenant", self.directory.get_tenant_id)
        return self._tenant_id

    def run(self) -> RunReport:
        report = RunReport()
        descriptors = self.config.ordered_applications()
        edges = self.config.grant_edges
        tenant_id = self.tenant_id()
        self.sequencer.tenant_id = tenant_id

        for descriptor in descriptors:
            record = self._step(
                f"Reconcile '{descriptor.display_name}'", self.reconciler.reconcile, descriptor
            )
            report.records[descriptor.key] = record
            self.sequencer.track(record)

        for descriptor in descriptors:
            producers = {
                edge.producer: report.records[edge.producer]
                for edge in edges
                if edge.consumer == descriptor.key
            }
            self._step(
                f"Request permissions for '{descriptor.display_name}'",
                self.sequencer.apply_grants,
                producers,
                report.records[descriptor.key],
                edges,
            )

        for descriptor in descriptors:
            if not descriptor.known_clients:
                continue
            client_ids = [report.records[key].app_id for key in descriptor.known_clients]
            self._step(
                f"Link known clients of '{descriptor.display_name}'",
                self.reconciler.link_known_clients,
                report.records[descriptor.key],
                descriptor,
                client_ids,
            )

        for descriptor in descriptors:
            record = report.records[descriptor.key]
            result = self._step(
                f"Admin consent for '{descriptor.display_name}'",
                self.sequencer.attempt_admin_consent,
                record,
            )
            report.consent.append(result)
            report.remediation.extend(self.sequencer.remediation_steps(record, result))

        emitter = ConfigEmitter(self.config.output.descriptor_file, tenant_id, self.config.applications)
        report.descriptor_path = self._step(
            "Write descriptor", emitter.emit, list(report.records.values())
        )
        if report.remediation:
            logger.warning("%s manual consent step(s) remain.", len(report.remediation))
        return report

    def cleanup(self) -> Dict[str, int]:
        """Delete every configured application, consumers first."""

        removed: Dict[str, int] = {}
        for descriptor in reversed(self.config.ordered_applications()):
            removed[descriptor.key] = self._step(
                f"Remove '{descriptor.display_name}'", self.reconciler.remove, descriptor
            )
        return removed


__all__ = ["ProvisioningOrchestrator", "RunReport"]
