from proxydeploy.ledger import DeploymentRecord, DeploymentStatus
from proxydeploy.verification import Verifier, verify_deployments
from tests.conftest import NETWORK, make_address


class FlakyVerifier(Verifier):
    def __init__(self, errors):
        self.errors = errors
        self.requested = list()

    def verify(self, record):
        self.requested.append(record.component)
        error = self.errors.get(record.component)
        if error is not None:
            raise error


def confirmed(name, n):
    return DeploymentRecord(
        component=name,
        network=NETWORK,
        status=DeploymentStatus.CONFIRMED,
        address=make_address(n),
        logic_address=make_address(n + 1),
    )


def test_verification_is_best_effort(caplog):
    verifier = FlakyVerifier(
        {
            "B": ValueError("Etherscan API unavailable"),
            "C": RuntimeError("Contract source code already verified"),
        }
    )
    records = [confirmed("A", 1), confirmed("B", 3), confirmed("C", 5)]

    verified = verify_deployments(verifier, records)

    assert verifier.requested == ["A", "B", "C"]
    assert verified == ["A", "C"]
    assert "Verification of B failed" in caplog.text
