"""
Narrow transport between the executor and a network.

A session holds one signer and one endpoint for a run. It submits requests and waits
for confirmations; it never retries. Failures are raised as TransientSubmitError or
PermanentSubmitError so that the executor can apply its retry policy.
"""

from abc import ABC, abstractmethod
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple, Optional, Tuple, Type

from proxydeploy.constants import PERMANENT_ERROR_MARKERS, TRANSIENT_ERROR_MARKERS, ProxyKind
from proxydeploy.exceptions import PermanentSubmitError, SubmitError, TransientSubmitError


class RequestKind(Enum):
    DEPLOY = "deploy"
    UPGRADE = "upgrade"


class TxRequest(NamedTuple):
    """Proxy-creation-and-initialize (or upgrade) operation for one component."""

    component: str
    kind: RequestKind
    proxy_kind: ProxyKind
    artifact: Any  # ArtifactDescriptor
    args: Tuple[Any, ...] = ()
    initializer: Optional[str] = None
    proxy_address: Optional[str] = None
    tx_overrides: Mapping[str, Any] = MappingProxyType({})


class TxResult(NamedTuple):
    handle: Any
    tx_hash: Optional[str] = None


class Confirmation(NamedTuple):
    address: str
    logic_address: Optional[str]
    block_number: int
    tx_hash: str


class NetworkSession(ABC):
    def __init__(self, network: str, signer: Optional[str] = None):
        self.network = network
        self.signer = signer

    @abstractmethod
    def submit(self, request: TxRequest) -> TxResult:
        raise NotImplementedError

    @abstractmethod
    def wait_for_confirmation(self, handle: Any, timeout: Optional[float] = None) -> Confirmation:
        raise NotImplementedError


def classify_error_message(message: str) -> Type[SubmitError]:
    """Maps raw provider error text to a transient or permanent submit error class."""
    text = message.lower()
    if any(marker in text for marker in PERMANENT_ERROR_MARKERS):
        return PermanentSubmitError
    if any(marker in text for marker in TRANSIENT_ERROR_MARKERS):
        return TransientSubmitError
    # unknown failures are not retried: a blind retry may double-deploy
    return PermanentSubmitError
