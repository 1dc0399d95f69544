import threading

import pytest

from proxydeploy.constants import ProxyKind
from proxydeploy.exceptions import (
    ConfirmationTimeout,
    DeploymentCancelled,
    InvalidArguments,
    PermanentDeployError,
    RetriesExhausted,
)
from proxydeploy.executor import Executor, RetryPolicy
from proxydeploy.ledger import DeploymentRecord, DeploymentStatus
from proxydeploy.manifest import ComponentSpec
from proxydeploy.session import RequestKind
from tests.conftest import (
    DEPLOYER,
    NETWORK,
    NO_DELAY,
    ScriptedSession,
    make_address,
    revert,
    timeout,
)

ROOT = ComponentSpec(name="Root", proxy_kind=ProxyKind.TRANSPARENT)
VAULT = ComponentSpec(name="Vault")


def test_retry_policy_backoff():
    policy = RetryPolicy(attempts=5, initial_delay=1.0, factor=2.0, max_delay=5.0)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_deploy_proxied_component(executor, session, ledger, events):
    record = executor.deploy(ROOT, (DEPLOYER,))

    assert record.status is DeploymentStatus.CONFIRMED
    assert record.address == make_address(0x1001)
    assert record.logic_address == make_address(0x2001)
    assert record.block_number == 101
    assert record.proxy_kind == "transparent"
    assert record.args == (DEPLOYER,)
    assert record.deployer == DEPLOYER
    assert record.attempts == 1
    assert ledger.get("Root", NETWORK) == record
    assert events == [("Root", "pending"), ("Root", "confirmed")]

    (request,) = session.requests
    assert request.kind is RequestKind.DEPLOY
    assert request.proxy_kind is ProxyKind.TRANSPARENT
    assert request.initializer == "initialize"
    assert request.args == (DEPLOYER,)
    assert request.artifact.name == "Root"


def test_unproxied_component_uses_constructor(executor, session):
    record = executor.deploy(VAULT, (DEPLOYER, 10))
    assert record.status is DeploymentStatus.CONFIRMED
    assert record.proxy_kind == "none"
    assert session.requests[0].initializer is None
    assert session.requests[0].args == (DEPLOYER, 10)


def test_confirmed_component_is_skipped(executor, session, ledger, events):
    first = executor.deploy(ROOT, (DEPLOYER,))
    second = executor.deploy(ROOT, (DEPLOYER,))
    assert second == first
    assert session.submissions["Root"] == 1
    assert len(ledger.history("Root", NETWORK)) == 2


def test_force_redeploys(executor, session, ledger):
    first = executor.deploy(ROOT, (DEPLOYER,))
    second = executor.deploy(ROOT, (DEPLOYER,), force=True)
    assert session.submissions["Root"] == 2
    assert second.address != first.address
    assert ledger.get("Root", NETWORK) == second


def test_transient_failures_are_retried(ledger, artifacts, events):
    session = ScriptedSession(failures={"Root": [timeout(), timeout()]})
    executor = Executor(session, ledger, artifacts, retry_policy=NO_DELAY)

    record = executor.deploy(ROOT, (DEPLOYER,))
    assert record.status is DeploymentStatus.CONFIRMED
    assert record.attempts == 3
    assert session.submissions["Root"] == 3
    # exactly one write per state transition
    assert events == [("Root", "pending"), ("Root", "confirmed")]


def test_retries_are_bounded(ledger, artifacts, events):
    session = ScriptedSession(failures={"Root": [timeout()] * 5})
    executor = Executor(session, ledger, artifacts, retry_policy=NO_DELAY)

    with pytest.raises(RetriesExhausted) as error:
        executor.deploy(ROOT, (DEPLOYER,))
    assert session.submissions["Root"] == NO_DELAY.attempts
    assert error.value.record.status is DeploymentStatus.FAILED
    assert error.value.record.attempts == NO_DELAY.attempts
    assert "request timed out" in error.value.record.error
    assert ledger.get("Root", NETWORK) == error.value.record
    assert events == [("Root", "pending"), ("Root", "failed")]


def test_permanent_failure_is_not_retried(ledger, artifacts, events):
    session = ScriptedSession(failures={"Root": [revert(), revert()]})
    executor = Executor(session, ledger, artifacts, retry_policy=NO_DELAY)

    with pytest.raises(PermanentDeployError) as error:
        executor.deploy(ROOT, (DEPLOYER,))
    assert session.submissions["Root"] == 1
    assert error.value.kind == "PermanentDeployError"
    assert "execution reverted" in str(error.value.cause)
    assert ledger.get("Root", NETWORK).status is DeploymentStatus.FAILED
    assert events == [("Root", "pending"), ("Root", "failed")]


def test_invalid_arguments_never_submit(executor, session, ledger, events):
    with pytest.raises(InvalidArguments, match="expects 1 argument"):
        executor.deploy(ROOT, (DEPLOYER, DEPLOYER))
    with pytest.raises(InvalidArguments, match="does not match ABI type 'address'"):
        executor.deploy(ROOT, ("not an address",))

    assert session.requests == []
    assert ledger.get("Root", NETWORK).status is DeploymentStatus.FAILED
    assert events == [("Root", "failed"), ("Root", "failed")]


def test_missing_initializer(executor, session):
    spec = ROOT._replace(initializer="setUp")
    with pytest.raises(InvalidArguments, match="no 'setUp' method"):
        executor.deploy(spec, (DEPLOYER,))
    assert session.requests == []


def test_named_arguments_must_match_abi(executor):
    spec = ROOT._replace(arg_names=("admin",))
    with pytest.raises(InvalidArguments, match="expected ABI name 'owner'"):
        executor.deploy(spec, (DEPLOYER,))


def test_cancel_interrupts_backoff(ledger, artifacts):
    session = ScriptedSession(failures={"Root": [timeout()]})
    cancel_event = threading.Event()
    cancel_event.set()
    executor = Executor(
        session,
        ledger,
        artifacts,
        retry_policy=RetryPolicy(attempts=3, initial_delay=60),
        cancel_event=cancel_event,
    )
    with pytest.raises(DeploymentCancelled):
        executor.deploy(ROOT, (DEPLOYER,))
    assert session.submissions["Root"] == 1
    assert ledger.get("Root", NETWORK).status is DeploymentStatus.FAILED


def test_confirmation_timeout_waits_again_without_resubmitting(ledger, artifacts, events):
    session = ScriptedSession(confirmation_failures={"Root": [ConfirmationTimeout("not mined")]})
    executor = Executor(session, ledger, artifacts, retry_policy=NO_DELAY)

    record = executor.deploy(ROOT, (DEPLOYER,))
    assert record.status is DeploymentStatus.CONFIRMED
    assert session.submissions["Root"] == 1
    assert session.confirmation_waits["Root"] == 2
    assert record.attempts == 2
    assert events == [("Root", "pending"), ("Root", "confirmed")]


def test_confirmation_waits_are_bounded(ledger, artifacts):
    session = ScriptedSession(
        confirmation_failures={"Root": [ConfirmationTimeout("not mined")] * 5}
    )
    executor = Executor(session, ledger, artifacts, retry_policy=NO_DELAY)

    with pytest.raises(RetriesExhausted):
        executor.deploy(ROOT, (DEPLOYER,))
    assert session.submissions["Root"] == 1
    assert session.confirmation_waits["Root"] == NO_DELAY.attempts
    assert ledger.get("Root", NETWORK).status is DeploymentStatus.FAILED


def test_unexpected_error_is_recorded_as_failure(ledger, artifacts, events):
    session = ScriptedSession(failures={"Root": [AttributeError("no attribute 'setUp'")]})
    executor = Executor(session, ledger, artifacts, retry_policy=NO_DELAY)

    with pytest.raises(PermanentDeployError) as error:
        executor.deploy(ROOT, (DEPLOYER,))
    assert isinstance(error.value.cause, AttributeError)
    assert session.submissions["Root"] == 1
    failed = ledger.get("Root", NETWORK)
    assert failed.status is DeploymentStatus.FAILED
    assert "no attribute 'setUp'" in failed.error
    assert events == [("Root", "pending"), ("Root", "failed")]


def test_orphaned_pending_record_is_redeployed(executor, session, ledger):
    ledger.put(DeploymentRecord(component="Root", network=NETWORK, status=DeploymentStatus.PENDING))
    record = executor.deploy(ROOT, (DEPLOYER,))
    assert record.status is DeploymentStatus.CONFIRMED
    assert session.submissions["Root"] == 1


def test_upgrade(executor, session, ledger):
    deployed = executor.deploy(ROOT, (DEPLOYER,))
    upgraded = executor.upgrade(ROOT)

    assert upgraded.status is DeploymentStatus.CONFIRMED
    assert upgraded.address == deployed.address
    assert upgraded.args == deployed.args
    assert upgraded.logic_address != deployed.logic_address
    request = session.requests[-1]
    assert request.kind is RequestKind.UPGRADE
    assert request.proxy_address == deployed.address
    assert ledger.get("Root", NETWORK) == upgraded


def test_upgrade_requires_confirmed_proxy(executor):
    with pytest.raises(PermanentDeployError, match="no confirmed deployment"):
        executor.upgrade(ROOT)
    with pytest.raises(PermanentDeployError, match="not proxied"):
        executor.upgrade(VAULT)
