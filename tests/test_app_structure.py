from app.core.config import settings
from app.core.container import global_container
from app.main import mcp


def test_config_loading():
    assert settings.PROJECT_NAME == "guarded-signer"
    assert settings.SPEND_WINDOW_MODE == "rolling"
    assert mcp.name == "guarded-signer"


def test_container_wires_default_identity():
    ident = global_container.identity()
    assert ident.identity_id == settings.DEFAULT_IDENTITY_ID
    assert ident.key_path("base") == "keys/base-signer"
    assert global_container.orchestrator.guardrails(ident.identity_id)["intents_api_enabled"] is True
    assert not global_container.vault.is_configured()
    assert not global_container.simulator.is_configured()
