import logging
import threading
import time
from typing import Any, Callable, NamedTuple, Optional, Sequence, Type

from proxydeploy.constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_FACTOR,
    DEFAULT_RETRY_INITIAL_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
)
from proxydeploy.exceptions import (
    DeployError,
    DeploymentCancelled,
    InvalidArguments,
    ManifestError,
    PermanentDeployError,
    PermanentSubmitError,
    RetriesExhausted,
    TransientSubmitError,
)
from proxydeploy.ledger import DeploymentRecord, DeploymentStatus
from proxydeploy.session import RequestKind, TxRequest
from proxydeploy.utils import to_json_safe

logger = logging.getLogger(__name__)


class RetryPolicy(NamedTuple):
    """Exponential backoff for transient submission failures."""

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    factor: float = DEFAULT_RETRY_FACTOR
    max_delay: float = DEFAULT_RETRY_MAX_DELAY

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self.initial_delay * self.factor ** (attempt - 1), self.max_delay)


class Executor:
    """
    Deploys (or skips) one component at a time through a network session and records
    every terminal outcome in the ledger with a single write.
    """

    def __init__(
        self,
        session,
        ledger,
        artifacts,
        retry_policy: RetryPolicy = RetryPolicy(),
        cancel_event: Optional[threading.Event] = None,
        confirmation_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.ledger = ledger
        self.artifacts = artifacts
        self.retry_policy = retry_policy
        self.cancel_event = cancel_event or threading.Event()
        self.confirmation_timeout = confirmation_timeout
        self._clock = clock

    @property
    def network(self) -> str:
        return self.session.network

    def _record(
        self, spec, status: DeploymentStatus, args: Sequence[Any], **kwargs
    ) -> DeploymentRecord:
        return DeploymentRecord(
            component=spec.name,
            network=self.network,
            status=status,
            timestamp=int(self._clock()),
            proxy_kind=spec.proxy_kind.value,
            contract_type=spec.artifact_name,
            args=tuple(to_json_safe(list(args))),
            deployer=self.session.signer,
            **kwargs,
        )

    def _fail(
        self,
        record: DeploymentRecord,
        error_class: Type[DeployError],
        message: str,
        cause: Optional[BaseException],
        attempts: int,
    ) -> DeployError:
        failed = record._replace(
            status=DeploymentStatus.FAILED,
            attempts=attempts,
            error=f"{error_class.__name__}: {cause if cause is not None else message}",
            timestamp=int(self._clock()),
        )
        self.ledger.put(failed)
        logger.error("%s failed on %s: %s", record.component, record.network, message)
        return error_class(message, record=failed, cause=cause)

    def deploy(self, spec, resolved_args: Sequence[Any], force: bool = False) -> DeploymentRecord:
        """
        Deploys a component unless it is already confirmed on the session's network.
        Raises DeployError (carrying the Failed record) when the component fails.
        """
        existing = self.ledger.get(spec.name, self.network)
        if existing is not None and existing.status is DeploymentStatus.CONFIRMED:
            if not force:
                logger.info(
                    "%s already deployed on %s at %s; skipping",
                    spec.name,
                    self.network,
                    existing.address,
                )
                return existing
            logger.info("Force redeploying %s on %s", spec.name, self.network)
        elif existing is not None and existing.status is DeploymentStatus.PENDING:
            logger.warning(
                "%s has a pending record on %s from an earlier run with unknown outcome; "
                "redeploying",
                spec.name,
                self.network,
            )

        try:
            args = self.artifacts.validate(spec, resolved_args)
        except (InvalidArguments, ManifestError) as e:
            record = self._record(spec, DeploymentStatus.PENDING, resolved_args)
            raise self._fail(record, InvalidArguments, str(e), e, attempts=0)

        request = TxRequest(
            component=spec.name,
            kind=RequestKind.DEPLOY,
            proxy_kind=spec.proxy_kind,
            artifact=self.artifacts.descriptor(spec.artifact_name),
            args=args,
            initializer=spec.initializer if spec.proxied else None,
            tx_overrides=spec.tx_overrides,
        )
        pending = self._record(spec, DeploymentStatus.PENDING, args)
        self.ledger.put(pending)
        return self._execute(request, pending)

    def upgrade(self, spec) -> DeploymentRecord:
        """Points a confirmed proxy at a freshly deployed logic contract."""
        current = self.ledger.get(spec.name, self.network)
        if not spec.proxied:
            raise PermanentDeployError(f"{spec.name} is not proxied and cannot be upgraded")
        if current is None or current.status is not DeploymentStatus.CONFIRMED:
            raise PermanentDeployError(
                f"{spec.name} has no confirmed deployment on {self.network} to upgrade"
            )

        request = TxRequest(
            component=spec.name,
            kind=RequestKind.UPGRADE,
            proxy_kind=spec.proxy_kind,
            artifact=self.artifacts.descriptor(spec.artifact_name),
            proxy_address=current.address,
            tx_overrides=spec.tx_overrides,
        )
        pending = self._record(
            spec, DeploymentStatus.PENDING, current.args, address=current.address
        )
        self.ledger.put(pending)
        return self._execute(request, pending)

    def _execute(self, request: TxRequest, pending: DeploymentRecord) -> DeploymentRecord:
        policy = self.retry_policy
        attempt = 0
        result = None
        while True:
            attempt += 1
            try:
                # once submitted, only the confirmation wait is retried
                if result is None:
                    result = self.session.submit(request)
                confirmation = self.session.wait_for_confirmation(
                    result.handle, timeout=self.confirmation_timeout
                )
            except TransientSubmitError as e:
                if attempt >= policy.attempts:
                    raise self._fail(
                        pending,
                        RetriesExhausted,
                        f"{request.component} still failing after {attempt} attempt(s): {e}",
                        e,
                        attempt,
                    )
                delay = policy.delay(attempt)
                logger.warning(
                    "Transient failure %s %s (attempt %d/%d): %s; retrying in %.1fs",
                    "deploying" if result is None else "confirming",
                    request.component,
                    attempt,
                    policy.attempts,
                    e,
                    delay,
                )
                if self.cancel_event.wait(delay):
                    raise self._fail(
                        pending,
                        DeploymentCancelled,
                        f"{request.component} cancelled while waiting to retry",
                        e,
                        attempt,
                    )
                continue
            except PermanentSubmitError as e:
                raise self._fail(
                    pending, PermanentDeployError, f"{request.component}: {e}", e, attempt
                )
            except Exception as e:
                logger.exception("Unexpected error deploying %s", request.component)
                raise self._fail(
                    pending,
                    PermanentDeployError,
                    f"{request.component}: {type(e).__name__}: {e}",
                    e,
                    attempt,
                )
            break

        confirmed = pending._replace(
            status=DeploymentStatus.CONFIRMED,
            address=confirmation.address,
            logic_address=confirmation.logic_address,
            block_number=confirmation.block_number,
            tx_hash=confirmation.tx_hash,
            attempts=attempt,
            timestamp=int(self._clock()),
        )
        self.ledger.put(confirmed)
        logger.info(
            "%s %s on %s at %s (logic %s)",
            request.component,
            "upgraded" if request.kind is RequestKind.UPGRADE else "deployed",
            self.network,
            confirmation.address,
            confirmation.logic_address,
        )
        return confirmed
