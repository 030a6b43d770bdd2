import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    PROJECT_NAME: str = "guarded-signer"
    VERSION: str = "0.1.0"

    # Vault
    VAULT_API_URL: str = os.getenv("VAULT_API_URL", "https://api.1claw.xyz").strip()
    VAULT_AGENT_ID: str = os.getenv("VAULT_AGENT_ID", "").strip()
    VAULT_AGENT_API_KEY: str = os.getenv("VAULT_AGENT_API_KEY", "").strip()
    VAULT_ID: str = os.getenv("VAULT_ID", "").strip()
    KEY_PATH_TEMPLATE: str = os.getenv("KEY_PATH_TEMPLATE", "keys/{chain}-signer").strip()

    # Default identity served by the MCP tools (the vault agent itself unless overridden)
    DEFAULT_IDENTITY_ID: str = (os.getenv("DEFAULT_IDENTITY_ID") or os.getenv("VAULT_AGENT_ID") or "default").strip()
    # "vault" pulls guardrails from the agent record; "env" uses ALLOW_* / *_ETH below
    GUARDRAIL_SOURCE: str = os.getenv("GUARDRAIL_SOURCE", "env").strip().lower()

    # Simulation / broadcast
    SIMULATION_URL: str = os.getenv("SIMULATION_URL", "").strip()
    SIMULATION_TIMEOUT_SEC: float = float(os.getenv("SIMULATION_TIMEOUT_SEC", "15"))
    BROADCAST_TIMEOUT_SEC: float = float(os.getenv("BROADCAST_TIMEOUT_SEC", "30"))
    CONFIRMATION_TIMEOUT_SEC: float = float(os.getenv("CONFIRMATION_TIMEOUT_SEC", "60"))
    CONFIRMATION_POLL_SEC: float = float(os.getenv("CONFIRMATION_POLL_SEC", "2"))
    WAIT_FOR_CONFIRMATION: bool = _env_bool("WAIT_FOR_CONFIRMATION", "true")

    # Spend ledger
    SPEND_WINDOW_MODE: str = os.getenv("SPEND_WINDOW_MODE", "rolling").strip().lower()
    SPEND_WINDOW_SECONDS: int = int(os.getenv("SPEND_WINDOW_SECONDS", "86400"))

    # Owner-only operations (guardrail replacement over REST)
    OWNER_API_TOKEN: str = os.getenv("OWNER_API_TOKEN", "").strip()

    # Ops
    RATE_LIMIT_DEFAULT_PER_MIN: int = int(os.getenv("RATE_LIMIT_DEFAULT_PER_MIN", "120"))
    RATE_LIMIT_SUBMIT_PER_MIN: int = int(os.getenv("RATE_LIMIT_SUBMIT_PER_MIN", "10"))
    PIPELINE_WORKERS: int = int(os.getenv("PIPELINE_WORKERS", "4"))


settings = Settings()
