import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from proxydeploy import graph
from proxydeploy.artifacts import ArtifactRegistry
from proxydeploy.constants import DEFAULT_WORKERS
from proxydeploy.exceptions import (
    DeployError,
    DependencyNotReady,
    InvalidArguments,
    ManifestError,
    MissingConfig,
)
from proxydeploy.executor import Executor, RetryPolicy
from proxydeploy.graph import DeploymentPlan
from proxydeploy.ledger import DeploymentRecord
from proxydeploy.params import ResolvedArgs, resolve
from proxydeploy.verification import Verifier, verify_deployments

logger = logging.getLogger(__name__)


class ComponentStatus(Enum):
    CONFIRMED = "confirmed"
    SKIPPED = "skipped"  # already confirmed by an earlier run
    FAILED = "failed"
    BLOCKED = "blocked"  # a dependency did not succeed
    CANCELLED = "cancelled"


SUCCESSFUL = (ComponentStatus.CONFIRMED, ComponentStatus.SKIPPED)


class ComponentOutcome(NamedTuple):
    name: str
    status: ComponentStatus
    record: Optional[DeploymentRecord] = None
    error: Optional[BaseException] = None
    blocked_by: Optional[str] = None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    @property
    def cause(self) -> Optional[BaseException]:
        return getattr(self.error, "cause", None) or self.error


class RunSummary(NamedTuple):
    network: str
    outcomes: Mapping[str, ComponentOutcome]

    @property
    def succeeded(self) -> bool:
        return all(outcome.status in SUCCESSFUL for outcome in self.outcomes.values())

    @property
    def first_failure(self) -> Optional[str]:
        """Name of the first permanently failed component in deployment order."""
        for name, outcome in self.outcomes.items():
            if outcome.status is ComponentStatus.FAILED:
                return name
        return None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class PlannedComponent(NamedTuple):
    spec: object
    args: ResolvedArgs
    pending_refs: Tuple[str, ...] = ()
    problem: Optional[str] = None


class Orchestrator:
    """
    Drives one run: builds the plan, resolves arguments and deploys components on a
    bounded worker pool, never starting a component before all of its references
    have been confirmed.
    """

    def __init__(
        self,
        manifest,
        network: str,
        ledger,
        artifacts: ArtifactRegistry,
        config: Mapping,
        session=None,
        workers: int = DEFAULT_WORKERS,
        force: bool = False,
        verifier: Optional[Verifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        executor: Optional[Executor] = None,
    ):
        self.manifest = manifest
        self.network = network
        self.ledger = ledger
        self.artifacts = artifacts
        self.config = config
        self.session = session
        self.workers = max(1, workers)
        self.force = force
        self.verifier = verifier
        self.cancel_event = cancel_event or threading.Event()
        self.timeout = timeout

        if executor is None and session is not None:
            executor = Executor(
                session=session,
                ledger=ledger,
                artifacts=artifacts,
                retry_policy=retry_policy or getattr(manifest, "retry_policy", RetryPolicy()),
                cancel_event=self.cancel_event,
            )
        self.executor = executor

    @property
    def deployer(self) -> Optional[str]:
        return self.session.signer if self.session is not None else None

    def cancel(self) -> None:
        """Stops scheduling new deployments; in-flight ones are allowed to finish."""
        self.cancel_event.set()

    def plan(self) -> DeploymentPlan:
        return graph.build(self.manifest, network=self.network)

    def dry_run(self) -> List[PlannedComponent]:
        """Builds the plan and resolves arguments without submitting anything."""
        plan = self.plan()
        planned = list()
        for spec in plan.order:
            pending_refs = tuple(
                ref
                for ref in plan.dependencies[spec.name]
                if self.artifacts.deployed_address(ref, self.network) is None
            )
            try:
                args = resolve(
                    spec,
                    self.network,
                    self.ledger,
                    self.config,
                    deployer=self.deployer,
                    eager=True,
                )
            except MissingConfig as e:
                planned.append(PlannedComponent(spec, (), pending_refs, str(e)))
                continue
            problem = None
            try:
                self.artifacts.validate(spec, args)
            except (InvalidArguments, ManifestError) as e:
                problem = str(e)
            planned.append(PlannedComponent(spec, args, pending_refs, problem))
        return planned

    def _deploy_component(self, spec) -> ComponentOutcome:
        previous = self.ledger.get(spec.name, self.network)
        try:
            args = resolve(spec, self.network, self.ledger, self.config, deployer=self.deployer)
        except MissingConfig as e:
            logger.error("Cannot resolve arguments of %s: %s", spec.name, e)
            return ComponentOutcome(spec.name, ComponentStatus.FAILED, error=e)
        except DependencyNotReady:
            logger.critical(
                "%s was scheduled before its dependencies were confirmed; this is a defect",
                spec.name,
            )
            raise

        try:
            record = self.executor.deploy(spec, args, force=self.force)
        except DeployError as e:
            return ComponentOutcome(spec.name, ComponentStatus.FAILED, record=e.record, error=e)

        if not self.force and record == previous:
            return ComponentOutcome(spec.name, ComponentStatus.SKIPPED, record=record)
        if self.verifier is not None:
            verify_deployments(self.verifier, [record])
        return ComponentOutcome(spec.name, ComponentStatus.CONFIRMED, record=record)

    def _schedule(
        self,
        plan: DeploymentPlan,
        waiting: List[str],
        outcomes: Dict[str, ComponentOutcome],
        in_flight: Dict[Future, str],
        pool: ThreadPoolExecutor,
    ) -> None:
        specs = {spec.name: spec for spec in plan.order}
        for name in list(waiting):
            deps = plan.dependencies[name]
            broken = [d for d in deps if d in outcomes and outcomes[d].status not in SUCCESSFUL]
            if broken:
                logger.warning("Not deploying %s: dependency %s did not succeed", name, broken[0])
                outcomes[name] = ComponentOutcome(
                    name, ComponentStatus.BLOCKED, blocked_by=broken[0]
                )
                waiting.remove(name)
                continue
            if len(in_flight) >= self.workers:
                continue
            if all(d in outcomes for d in deps):
                waiting.remove(name)
                in_flight[pool.submit(self._deploy_component, specs[name])] = name

    def run(self) -> RunSummary:
        """
        Deploys every component of the plan. Component failures are reported in the
        summary; ledger failures and invariant violations are raised once in-flight
        deployments have finished.
        """
        if self.executor is None:
            raise ValueError("A network session is required to deploy; use dry_run() instead")

        plan = self.plan()
        logger.info("Deploying %d component(s) to %s", len(plan.order), self.network)

        outcomes: Dict[str, ComponentOutcome] = dict()
        waiting = list(plan.names)
        in_flight: Dict[Future, str] = dict()
        fatal: Optional[BaseException] = None
        deadline = time.monotonic() + self.timeout if self.timeout else None

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="deploy") as pool:
            while waiting or in_flight:
                if self.cancel_event.is_set():
                    for name in waiting:
                        outcomes[name] = ComponentOutcome(name, ComponentStatus.CANCELLED)
                    waiting = list()
                else:
                    self._schedule(plan, waiting, outcomes, in_flight, pool)

                if not in_flight:
                    continue

                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    done, _ = wait(in_flight, timeout=remaining, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; waiting for in-flight deployments to finish")
                    self.cancel()
                    continue

                timed_out = deadline is not None and time.monotonic() >= deadline
                if timed_out:
                    if not self.cancel_event.is_set():
                        logger.warning("Run timeout reached; no further deployments will start")
                        self.cancel()
                    # in-flight deployments are left to finish
                    deadline = None

                for future in done:
                    name = in_flight.pop(future)
                    try:
                        outcomes[name] = future.result()
                    except Exception as e:
                        logger.error("Aborting run after fatal error in %s: %s", name, e)
                        outcomes[name] = ComponentOutcome(name, ComponentStatus.FAILED, error=e)
                        fatal = fatal or e
                        self.cancel()

        if fatal is not None:
            raise fatal

        return RunSummary(
            network=self.network,
            outcomes=OrderedDict((name, outcomes[name]) for name in plan.names),
        )

    def upgrade(self, names: Sequence[str]) -> RunSummary:
        """Upgrades the logic contract behind each named proxy, one at a time."""
        if self.executor is None:
            raise ValueError("A network session is required to upgrade")

        outcomes = OrderedDict()
        for name in names:
            spec = self.manifest.component(name)
            if self.cancel_event.is_set():
                outcomes[name] = ComponentOutcome(name, ComponentStatus.CANCELLED)
                continue
            try:
                record = self.executor.upgrade(spec)
            except DeployError as e:
                outcomes[name] = ComponentOutcome(
                    name, ComponentStatus.FAILED, record=e.record, error=e
                )
                continue
            if self.verifier is not None:
                verify_deployments(self.verifier, [record])
            outcomes[name] = ComponentOutcome(name, ComponentStatus.CONFIRMED, record=record)
        return RunSummary(network=self.network, outcomes=outcomes)
