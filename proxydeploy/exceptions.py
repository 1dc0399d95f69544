"""Exception hierarchy for proxydeploy."""

from typing import Iterable, Optional


class ProxyDeployError(Exception):
    """Base exception for all orchestrator errors."""


class ManifestError(ProxyDeployError, ValueError):
    """Raised when a deployment manifest is malformed."""


#
# Graph
#


class GraphError(ProxyDeployError):
    """Raised when a manifest cannot be turned into a deployment plan."""


class CycleDetected(GraphError):
    """Raised when component references form a cycle."""

    def __init__(self, members: Iterable[str]):
        self.members = tuple(members)
        super().__init__(f"Reference cycle detected between: {', '.join(self.members)}")


class UnknownReference(GraphError):
    """Raised when a component references a component absent from the manifest."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"{source} references unknown component '{target}'")


#
# Resolution
#


class ResolveError(ProxyDeployError):
    """Raised when a component's arguments cannot be resolved."""


class MissingConfig(ResolveError):
    """Raised when a constant is found neither in the manifest nor in the environment."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Constant '{key}' not found in manifest or environment")


class DependencyNotReady(ResolveError):
    """Raised when a referenced component has no confirmed deployment."""

    def __init__(self, name: str, network: str):
        self.name = name
        self.network = network
        super().__init__(f"{name} has no confirmed deployment on '{network}'")


#
# Deployment
#


class SubmitError(ProxyDeployError):
    """Raised by a network session when a submission fails."""

    transient = False


class TransientSubmitError(SubmitError):
    """Timeouts, nonce conflicts, congestion: worth retrying."""

    transient = True


class PermanentSubmitError(SubmitError):
    """Reverts, malformed arguments, insufficient funds: never retried."""


class ConfirmationTimeout(TransientSubmitError):
    """Raised when a submitted transaction is not confirmed in time."""


class DeployError(ProxyDeployError):
    """Raised by the executor when a component ends in the Failed state."""

    def __init__(self, message: str, record=None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.record = record
        self.cause = cause

    @property
    def kind(self) -> str:
        return type(self).__name__


class PermanentDeployError(DeployError):
    """Raised immediately for failures that retrying cannot fix."""


class InvalidArguments(PermanentDeployError):
    """Raised when resolved arguments do not match the artifact ABI."""


class RetriesExhausted(DeployError):
    """Raised when transient failures persist past the retry bound."""


class DeploymentCancelled(DeployError):
    """Raised when a run is cancelled while a component waits to retry."""


#
# Ledger
#


class LedgerError(ProxyDeployError):
    """Raised when the ledger cannot durably record state."""
