import pytest

from autogui.config import DEFAULT_MODEL, AgentConfig
from autogui.errors import ConfigurationError
from autogui.pool import build_model_pool

ENV_NAMES = [
    "OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL", "OPENAI_PROVIDER",
    "AUTOGUI_SCREENSHOT_INTERVAL", "AUTOGUI_MAX_ITERATIONS", "AUTOGUI_COORDINATE_SCALE",
    "AUTOGUI_ACTION_CONTEXT_LENGTH", "AUTOGUI_WORK_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_from_dict():
    config = AgentConfig.from_dict({
        "api": {
            "providers": [{
                "id": "openai",
                "name": "OpenAI",
                "base_url": "https://api.openai.com/v1",
                "api_keys": ["k1", "k2"],
                "models": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini", "enabled": False}],
            }],
        },
        "settings": {"max_iterations": 10, "screenshot_interval": 500},
    })

    assert config.settings.max_iterations == 10
    assert config.settings.screenshot_interval == 500
    assert config.settings.coordinate_scale == 1000
    assert [e.entry_id for e in build_model_pool(config.api)] == [
        "openai::gpt-4o::k1", "openai::gpt-4o::k2",
    ]


def test_from_dict_rejects_unknown_settings():
    with pytest.raises(ConfigurationError):
        AgentConfig.from_dict({"settings": {"screenshot_intervall": 10}})


def test_from_dict_rejects_bad_scale():
    with pytest.raises(ConfigurationError):
        AgentConfig.from_dict({"settings": {"coordinate_scale": 0}})


def test_from_env_reads_dotenv_file(clean_env, tmp_path):
    dotenv = tmp_path / ".env"
    dotenv.write_text(
        "OPENAI_API_KEY=sk-one, sk-two\n"
        "OPENAI_BASE_URL=https://proxy.example/v1\n"
        "AUTOGUI_MAX_ITERATIONS=7\n",
        encoding="utf-8",
    )

    config = AgentConfig.from_env(str(dotenv))

    assert config.api.api_key == ["sk-one", "sk-two"]
    assert config.api.base_url == "https://proxy.example/v1"
    assert config.api.model == DEFAULT_MODEL
    assert config.settings.max_iterations == 7
    entries = build_model_pool(config.api)
    assert [e.provider_id for e in entries] == ["legacy", "legacy"]


def test_environment_wins_over_dotenv(clean_env, tmp_path):
    dotenv = tmp_path / ".env"
    dotenv.write_text("OPENAI_MODEL=from-file\n", encoding="utf-8")
    clean_env.setenv("OPENAI_MODEL", "from-env")

    assert AgentConfig.from_env(str(dotenv)).api.model == "from-env"


def test_invalid_integer_is_a_configuration_error(clean_env, tmp_path):
    clean_env.setenv("AUTOGUI_MAX_ITERATIONS", "many")
    with pytest.raises(ConfigurationError):
        AgentConfig.from_env(str(tmp_path / "missing.env"))
