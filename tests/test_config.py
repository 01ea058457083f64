import config


def clear_env(monkeypatch):
    for name in (
        "DECISION_LLM_MODEL",
        "GROQ_MODEL",
        "DECISION_FALLBACK_MODEL",
        "GROQ_OVERFLOW_MODEL",
        "PORT",
        "DECISION_LLM_TIMEOUT",
        "MIN_ANALYSIS_SECONDS",
        "WHOP_API_KEY",
        "WHOP_PLAN_ID",
        "WHOP_COMPANY_ID",
        "DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_default_decision_models(monkeypatch):
    clear_env(monkeypatch)
    assert config.get_primary_decision_model() == config.DEFAULT_DECISION_MODEL
    assert config.get_fallback_decision_model() == config.DEFAULT_FALLBACK_MODEL
    assert config.get_decision_models() == [config.DEFAULT_DECISION_MODEL, config.DEFAULT_FALLBACK_MODEL]


def test_deprecated_models_are_remapped(monkeypatch):
    clear_env(monkeypatch)
    monkeypatch.setenv("DECISION_LLM_MODEL", "llama3-70b-8192  # old")
    monkeypatch.setenv("GROQ_OVERFLOW_MODEL", "llama3-8b-8192")
    assert config.get_primary_decision_model() == config.DEFAULT_DECISION_MODEL
    assert config.get_fallback_decision_model() == config.DEFAULT_FALLBACK_MODEL


def test_identical_models_are_not_tried_twice(monkeypatch):
    clear_env(monkeypatch)
    monkeypatch.setenv("DECISION_LLM_MODEL", "qwen/qwen3-32b")
    monkeypatch.setenv("DECISION_FALLBACK_MODEL", "qwen/qwen3-32b")
    assert config.get_decision_models() == ["qwen/qwen3-32b"]


def test_service_settings_defaults(monkeypatch):
    clear_env(monkeypatch)
    settings = config.load_service_settings()
    assert settings.port == 5000
    assert settings.ws_path == "/ws"
    assert settings.default_credits == 10
    assert settings.dev_user_id == "dev_user"
    assert settings.thinking_delay == 0.6
    assert settings.min_analysis_time == 2.0
    assert settings.follow_up_delay == 1.0
    assert settings.decision_timeout is None
    assert settings.database_url is None
    assert settings.whop_enabled is False


def test_service_settings_from_env(monkeypatch):
    clear_env(monkeypatch)
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("DECISION_LLM_TIMEOUT", "20")
    monkeypatch.setenv("MIN_ANALYSIS_SECONDS", "not-a-number")
    monkeypatch.setenv("WHOP_API_KEY", "key")
    monkeypatch.setenv("WHOP_PLAN_ID", "plan_9")
    monkeypatch.setenv("WHOP_COMPANY_ID", "biz_9")

    settings = config.load_service_settings()

    assert settings.port == 8080
    assert settings.decision_timeout == 20.0
    assert settings.min_analysis_time == 2.0
    assert settings.whop_enabled is True
    assert settings.whop_plan_id == "plan_9"
