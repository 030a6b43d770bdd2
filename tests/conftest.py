import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Add root directory to sys.path to allow imports from top-level modules
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Set environment variables BEFORE modules are imported
os.environ["VAULT_AGENT_ID"] = ""
os.environ["VAULT_AGENT_API_KEY"] = ""
os.environ["SIMULATION_URL"] = ""
os.environ["TX_DB_PATH"] = ""
os.environ["AUDIT_DB_PATH"] = ""
os.environ["IDEMPOTENCY_DB_PATH"] = ""
os.environ["DEFAULT_IDENTITY_ID"] = "agent-test"
os.environ["OWNER_API_TOKEN"] = "owner-secret"
os.environ["WAIT_FOR_CONFIRMATION"] = "true"
os.environ["VAULT_RETRY_BASE_DELAY_SEC"] = "0.05"

from common.errors import KeyNotFound  # noqa: E402
from core.identities import IdentityRegistry  # noqa: E402
from core.models import SimulationResult  # noqa: E402
from core.orchestrator import TransactionOrchestrator  # noqa: E402
from core.policy import GuardrailPolicy  # noqa: E402
from execution.store import TransactionStore  # noqa: E402
from signing.evm import EvmSigner  # noqa: E402
from signing.keys import KeyResolver  # noqa: E402

# Well-known development key (hardhat/anvil account #0). Never funded on a real network.
HARDHAT_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
HARDHAT_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
DEAD = "0x000000000000000000000000000000000000dEaD"


def make_w3(*, pending_nonce=0, base_fee=1_000_000_000, gas_estimate=21000):
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = pending_nonce
    w3.eth.estimate_gas.return_value = gas_estimate
    w3.eth.get_block.return_value = {"baseFeePerGas": base_fee} if base_fee is not None else {}
    w3.eth.max_priority_fee = 1_000_000_000
    w3.eth.gas_price = 2_000_000_000
    return w3


class StubVault:
    def __init__(self, secrets):
        self.secrets = dict(secrets)
        self.calls = []

    def get_secret(self, vault_id, path):
        self.calls.append((vault_id, path))
        if path not in self.secrets:
            raise KeyNotFound(f"No secret at {path}", {"key_path": path})
        return self.secrets[path]


class StubSimulator:
    def __init__(self, result=None, error=None):
        self.result = result or SimulationResult(status="success", gas_used=21000, dashboard_url="https://dash/sim_1")
        self.error = error
        self.calls = []

    def simulate(self, intent, identity_id):
        self.calls.append((intent, identity_id))
        if self.error is not None:
            raise self.error
        return self.result


class StubBroadcaster:
    def __init__(self):
        self.sent = []
        self.error = None
        self.confirmation = "confirmed"
        self.receipt = "confirmed"

    def broadcast(self, signed, chain):
        self.sent.append((signed, chain))
        if self.error is not None:
            raise self.error
        return signed.tx_hash

    def await_confirmation(self, tx_hash, chain, timeout):
        return self.confirmation

    def receipt_status(self, tx_hash, chain):
        return self.receipt


@pytest.fixture
def make_harness():
    """
    Build an orchestrator wired to in-memory stubs and a real EvmSigner over a mocked web3.
    Resolver and signer are wrapped in MagicMock spies so tests can assert call counts.
    """

    def _make(policy=None, *, secrets=None, identity_id="agent-1", **orch_kwargs):
        w3 = make_w3()
        vault = StubVault(secrets if secrets is not None else {"keys/base-signer": HARDHAT_KEY})
        simulator = StubSimulator()
        broadcaster = StubBroadcaster()
        identities = IdentityRegistry()
        ident = identities.register(identity_id=identity_id, vault_id="vault-1", policy=policy or GuardrailPolicy())
        resolver = MagicMock(wraps=KeyResolver(vault))
        signer = MagicMock(wraps=EvmSigner(web3_factory=lambda chain: w3))
        store = TransactionStore(db_path="")
        orch = TransactionOrchestrator(
            identities=identities,
            resolver=resolver,
            signer=signer,
            simulator=simulator,
            broadcaster=broadcaster,
            store=store,
            **orch_kwargs,
        )
        return SimpleNamespace(
            orch=orch,
            ident=ident,
            identities=identities,
            vault=vault,
            simulator=simulator,
            broadcaster=broadcaster,
            resolver=resolver,
            signer=signer,
            store=store,
            w3=w3,
        )

    return _make


@pytest.fixture
def scenario_policy():
    return GuardrailPolicy.build(chains=["base"], destinations=[], max_per_tx="0.001", daily_limit="0.005")


@pytest.fixture
def container():
    from app.core.container import global_container

    return global_container
