import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, NamedTuple, Optional, Tuple

import click
from ape import accounts, chain, networks, project
from ape.api import AccountAPI
from ape.api.networks import LOCAL_NETWORK_NAME
from ape.cli.choices import select_account
from ape.contracts import ContractContainer
from ape.exceptions import (
    ApeException,
    ContractLogicError,
    OutOfGasError,
    ProviderNotConnectedError,
)
from ape.utils import EMPTY_BYTES32
from eth_utils import to_checksum_address

from proxydeploy.artifacts import ArtifactDescriptor, ArtifactProvider
from proxydeploy.constants import (
    DEFAULT_PROXY_DEPENDENCY,
    EIP1967_ADMIN_SLOT,
    PROXY_ADMIN_NAME,
    TRANSPARENT_PROXY_NAME,
    UUPS_PROXY_NAME,
    ProxyKind,
)
from proxydeploy.exceptions import ManifestError, PermanentSubmitError, TransientSubmitError
from proxydeploy.ledger import DeploymentRecord
from proxydeploy.session import (
    Confirmation,
    NetworkSession,
    RequestKind,
    TxRequest,
    TxResult,
    classify_error_message,
)
from proxydeploy.verification import Verifier

logger = logging.getLogger(__name__)


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            contract_container = getattr(dependency_api, contract)
            return contract_container
        except AttributeError:
            continue
    raise ManifestError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)

    return contract_container


class ProjectArtifactProvider(ArtifactProvider):
    """Artifacts compiled by the ape project (and its dependencies)."""

    def get(self, name: str) -> ArtifactDescriptor:
        container = get_contract_container(name)
        return ArtifactDescriptor(name=name, contract_type=container.contract_type)


class ApeHandle(NamedTuple):
    receipt: Any
    address: str
    logic_address: Optional[str]


class ApeNetworkSession(NetworkSession):
    """
    Submits deployments through an ape account on the connected provider.
    Ape accounts are not safe for concurrent use, so submissions are serialized;
    confirmation waits are not.
    """

    def __init__(
        self,
        network: str,
        account: AccountAPI,
        proxy_dependency: Tuple[str, str] = DEFAULT_PROXY_DEPENDENCY,
    ):
        super().__init__(network=network, signer=account.address)
        self.account = account
        self.proxy_dependency = proxy_dependency
        self._submit_lock = threading.Lock()
        # logic contracts whose proxy or upgrade transaction has not gone through yet
        self._logic: Dict[Tuple[str, RequestKind], Any] = dict()

    def _dependency(self):
        name, version = self.proxy_dependency
        try:
            return project.dependencies[name][version]
        except KeyError:
            raise PermanentSubmitError(f"Proxy dependency {name}@{version} is not installed")

    @staticmethod
    def _call(method, *args, **kwargs):
        """Invokes an ape operation, translating its failures into submit errors."""
        try:
            return method(*args, **kwargs)
        except (ContractLogicError, OutOfGasError) as e:
            raise PermanentSubmitError(str(e)) from e
        except (ProviderNotConnectedError, ConnectionError, TimeoutError) as e:
            raise TransientSubmitError(str(e)) from e
        except ApeException as e:
            raise classify_error_message(str(e))(str(e)) from e

    def _deploy(self, container: ContractContainer, *args, tx_overrides=None):
        return self._call(
            self.account.deploy,
            container,
            *args,
            required_confirmations=0,
            **dict(tx_overrides or {}),
        )

    def _deploy_logic(self, request: TxRequest, container: ContractContainer):
        key = (request.component, request.kind)
        logic = self._logic.get(key)
        if logic is None:
            logic = self._deploy(container, tx_overrides=request.tx_overrides)
            self._logic[key] = logic
        else:
            logger.info("Reusing logic contract for %s at %s", request.component, logic.address)
        return logic

    def submit(self, request: TxRequest) -> TxResult:
        with self._submit_lock:
            if request.kind is RequestKind.UPGRADE:
                handle = self._submit_upgrade(request)
            else:
                handle = self._submit_deploy(request)
            self._logic.pop((request.component, request.kind), None)
        return TxResult(handle=handle, tx_hash=str(handle.receipt.txn_hash))

    def _submit_deploy(self, request: TxRequest) -> ApeHandle:
        container = ContractContainer(request.artifact.contract_type)
        if request.proxy_kind is ProxyKind.NONE:
            instance = self._deploy(container, *request.args, tx_overrides=request.tx_overrides)
            return ApeHandle(instance.receipt, address=instance.address, logic_address=None)

        logic = self._deploy_logic(request, container)
        data = b""
        if request.initializer:
            method_handler = getattr(logic, request.initializer, None)
            if method_handler is None:
                raise PermanentSubmitError(
                    f"{request.artifact.name} has no '{request.initializer}' method"
                )
            data = self._call(method_handler.encode_input, *request.args)

        dependency = self._dependency()
        logger.info("Deploying %s proxy for %s", request.proxy_kind.value, request.component)
        if request.proxy_kind is ProxyKind.TRANSPARENT:
            proxy_container = getattr(dependency, TRANSPARENT_PROXY_NAME)
            proxy_args = (logic.address, self.signer, data)
        else:
            proxy_container = getattr(dependency, UUPS_PROXY_NAME)
            proxy_args = (logic.address, data)
        proxy = self._deploy(proxy_container, *proxy_args, tx_overrides=request.tx_overrides)
        return ApeHandle(receipt=proxy.receipt, address=proxy.address, logic_address=logic.address)

    def _submit_upgrade(self, request: TxRequest) -> ApeHandle:
        container = ContractContainer(request.artifact.contract_type)
        logic = self._deploy_logic(request, container)
        tx_kwargs = dict(request.tx_overrides, sender=self.account, required_confirmations=0)

        if request.proxy_kind is ProxyKind.UUPS:
            proxy = container.at(request.proxy_address)
            receipt = self._call(proxy.upgradeToAndCall, logic.address, b"", **tx_kwargs)
        else:
            admin_slot = self._call(
                chain.provider.get_storage_at,
                address=request.proxy_address,
                slot=EIP1967_ADMIN_SLOT,
            )
            if admin_slot == EMPTY_BYTES32:
                raise PermanentSubmitError(
                    f"Admin slot for contract at {request.proxy_address} is empty. "
                    "Are you sure this is an EIP1967-compatible proxy?"
                )
            admin_address = to_checksum_address(admin_slot[-20:])
            proxy_admin = getattr(self._dependency(), PROXY_ADMIN_NAME).at(admin_address)
            receipt = self._call(
                proxy_admin.upgradeAndCall,
                request.proxy_address,
                logic.address,
                b"",
                **tx_kwargs,
            )
        return ApeHandle(receipt, address=request.proxy_address, logic_address=logic.address)

    def wait_for_confirmation(
        self, handle: ApeHandle, timeout: Optional[float] = None
    ) -> Confirmation:
        # confirmation polling is bounded by the provider's own network timeout
        receipt = handle.receipt
        self._call(receipt.await_confirmations)
        if receipt.failed:
            raise PermanentSubmitError(f"Transaction {receipt.txn_hash} failed")
        return Confirmation(
            address=to_checksum_address(handle.address),
            logic_address=(
                to_checksum_address(handle.logic_address) if handle.logic_address else None
            ),
            block_number=int(receipt.block_number),
            tx_hash=str(receipt.txn_hash),
        )


class ApeVerifier(Verifier):
    """Publishes contract sources through the network's explorer plugin."""

    def verify(self, record: DeploymentRecord) -> None:
        explorer = networks.provider.network.explorer
        if explorer is None:
            raise ValueError(f"No explorer plugin available for {networks.provider.network.name}")
        explorer.publish_contract(record.logic_address or record.address)


def is_local_network() -> bool:
    return networks.provider.network.name == LOCAL_NETWORK_NAME


def _load_account(alias: Optional[str], autosign: bool) -> AccountAPI:
    account = accounts.load(alias) if alias else select_account()
    if autosign:
        click.secho(
            "WARNING: Autosign is enabled. Transactions will be signed automatically.",
            fg="yellow",
        )
        set_autosign = getattr(account, "set_autosign", None)
        if set_autosign is not None:
            set_autosign(True)
    return account


@contextmanager
def open_session(
    network_config,
    proxy_dependency: Tuple[str, str] = DEFAULT_PROXY_DEPENDENCY,
    autosign: bool = False,
    verify: bool = False,
) -> Iterator[ApeNetworkSession]:
    """Connects to the network's provider and yields a session for the signer account."""
    if not network_config.provider:
        raise ManifestError(f"No provider configured for network '{network_config.name}'")

    with networks.parse_network_choice(network_config.provider) as provider:
        chain_id = provider.network.chain_id
        if network_config.chain_id is not None and network_config.chain_id != chain_id:
            if not is_local_network():
                raise ValueError(
                    f"chain_id in manifest ({network_config.chain_id}) does not match "
                    f"chain_id of current network ({chain_id})."
                )
        if verify and not is_local_network() and provider.network.explorer is None:
            raise ValueError("Please install an explorer plugin (e.g. ape-etherscan) to verify.")

        account = _load_account(network_config.account, autosign)
        yield ApeNetworkSession(
            network=network_config.name, account=account, proxy_dependency=proxy_dependency
        )
