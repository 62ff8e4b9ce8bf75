"""
Smoke test that the public modules import.
"""


def test_core_imports():
    from prompt_cost_guard.core.engine import PromptEngine
    from prompt_cost_guard.core.templates import TemplateRegistry
    assert PromptEngine is not None
    assert TemplateRegistry is not None


def test_sdk_exports():
    import prompt_cost_guard.sdk as sdk
    assert set(sdk.__all__) == {"AIGateway", "GatewayResponse", "OpenAIGateway", "UpstreamFailure"}
