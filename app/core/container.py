from app.core.config import settings
from common.idempotency import IdempotencyStore
from common.rate_limiter import FixedWindowRateLimiter
from core.identities import IdentityRegistry, SigningIdentity
from core.orchestrator import TransactionOrchestrator, default_executor
from core.policy import GuardrailPolicy
from execution.broadcaster import Web3Broadcaster
from execution.simulator import HttpSimulator
from execution.store import TransactionStore
from observability import AuditLog, Metrics, log_event
from signing.evm import EvmSigner
from signing.keys import KeyResolver
from vault.client import VaultClient


class Container:
    def __init__(self):
        # Observability
        self.metrics = Metrics()
        self.audit_log = AuditLog()

        # Ops
        self.rate_limiter = FixedWindowRateLimiter()
        self.idempotency_store = IdempotencyStore()

        # External collaborators
        self.vault = VaultClient(
            api_url=settings.VAULT_API_URL,
            agent_id=settings.VAULT_AGENT_ID,
            api_key=settings.VAULT_AGENT_API_KEY,
        )
        simulation_url = settings.SIMULATION_URL
        if not simulation_url and self.vault.is_configured():
            simulation_url = f"{self.vault.api_url}/v1/agents/{{identity_id}}/transactions/simulate"
        self.simulator = HttpSimulator(
            url=simulation_url,
            timeout=settings.SIMULATION_TIMEOUT_SEC,
            token_provider=self.vault.token if self.vault.is_configured() else None,
        )
        self.broadcaster = Web3Broadcaster(
            broadcast_timeout=settings.BROADCAST_TIMEOUT_SEC,
            poll_interval=settings.CONFIRMATION_POLL_SEC,
        )
        self.key_resolver = KeyResolver(self.vault)
        self.signer = EvmSigner()

        # Identities + records
        self.identities = IdentityRegistry(
            window_mode=settings.SPEND_WINDOW_MODE,
            window_seconds=settings.SPEND_WINDOW_SECONDS,
        )
        self.identities.register(
            identity_id=settings.DEFAULT_IDENTITY_ID,
            vault_id=settings.VAULT_ID,
            policy=GuardrailPolicy.from_env(),
            key_path_template=settings.KEY_PATH_TEMPLATE,
        )
        self.transaction_store = TransactionStore()

        self.orchestrator = TransactionOrchestrator(
            identities=self.identities,
            resolver=self.key_resolver,
            signer=self.signer,
            simulator=self.simulator,
            broadcaster=self.broadcaster,
            store=self.transaction_store,
            idempotency=self.idempotency_store,
            metrics=self.metrics,
            audit=self.audit_log,
            wait_for_confirmation=settings.WAIT_FOR_CONFIRMATION,
            confirmation_timeout=settings.CONFIRMATION_TIMEOUT_SEC,
            executor=default_executor(settings.PIPELINE_WORKERS),
            policy_source=self.sync_guardrails,
        )
        if self.transaction_store.persistence_enabled():
            self.orchestrator.rebuild_ledgers()

    def identity(self, identity_id: str = "") -> SigningIdentity:
        return self.identities.get(identity_id or settings.DEFAULT_IDENTITY_ID)

    def sync_guardrails(self, ident: SigningIdentity) -> bool:
        """
        Apply the owner's guardrails from the vault agent record when GUARDRAIL_SOURCE=vault.

        The orchestrator calls this before every guardrail evaluation. The agent record is cached
        by the vault client, so this is a dict lookup on most calls. An unconfigured or unreachable
        vault raises, and the caller refuses to sign.
        """
        if settings.GUARDRAIL_SOURCE != "vault":
            return False
        info = self.vault.get_agent_config(ident.identity_id)
        self.identities.apply_agent_config(ident.identity_id, info)
        return True

    def refresh_guardrails(self, identity_id: str = "") -> SigningIdentity:
        ident = self.identity(identity_id)
        if self.sync_guardrails(ident):
            log_event("guardrails_refreshed", data={"identity_id": ident.identity_id, "source": "vault"})
        return ident


global_container = Container()
