import logging
from abc import ABC, abstractmethod
from typing import Iterable, List

from proxydeploy.ledger import DeploymentRecord

logger = logging.getLogger(__name__)

ALREADY_VERIFIED_MARKERS = ("already verified", "contract source code already verified")


class Verifier(ABC):
    """Requests public source verification of deployed contracts."""

    @abstractmethod
    def verify(self, record: DeploymentRecord) -> None:
        raise NotImplementedError


def verify_deployments(verifier: Verifier, records: Iterable[DeploymentRecord]) -> List[str]:
    """
    Best-effort verification. Failures are logged and never undo a confirmed
    deployment. Returns the names of the components that were verified.
    """
    verified = list()
    for record in records:
        logger.info("Verifying %s at %s", record.component, record.logic_address or record.address)
        try:
            verifier.verify(record)
        except Exception as e:
            if any(marker in str(e).lower() for marker in ALREADY_VERIFIED_MARKERS):
                verified.append(record.component)
                continue
            logger.warning(
                "Verification of %s failed; deployment at %s is unaffected: %s",
                record.component,
                record.address,
                e,
            )
            continue
        verified.append(record.component)
    return verified
