from stepflow.config import (
    MAX_CONCURRENCY_HARD_CAP,
    MAX_LOOP_ITERATIONS_CEILING,
    Settings,
    get_settings,
    reset_settings_cache,
)


def test_defaults():
    settings = Settings()

    assert settings.max_concurrency == 8
    assert settings.step_timeout_seconds is None
    assert settings.workflow_timeout_ms is None
    assert settings.max_loop_iterations == MAX_LOOP_ITERATIONS_CEILING
    assert settings.tool_network_allowlist == []


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("STEPFLOW_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("STEPFLOW_STEP_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("STEPFLOW_WORKFLOW_TIMEOUT_MS", "60000")
    monkeypatch.setenv("STEPFLOW_BLOCKED_DOMAINS", "evil.test, *.leak.test ,")
    monkeypatch.setenv("TOOL_NETWORK_ALLOWLIST", "api.example.com")

    settings = Settings.from_env()

    assert settings.max_concurrency == 4
    assert settings.step_timeout_seconds == 2.5
    assert settings.workflow_timeout_ms == 60000
    assert settings.blocked_domains == ["evil.test", "*.leak.test"]
    assert settings.tool_network_allowlist == ["api.example.com"]


def test_values_are_clamped():
    settings = Settings(max_concurrency=100, max_loop_iterations=50_000)

    assert settings.max_concurrency == MAX_CONCURRENCY_HARD_CAP
    assert settings.max_loop_iterations == MAX_LOOP_ITERATIONS_CEILING
    assert Settings(max_concurrency=0).max_concurrency == 1


def test_non_positive_timeouts_mean_no_timeout():
    settings = Settings(step_timeout_seconds=0, workflow_timeout_ms=-5)

    assert settings.step_timeout_seconds is None
    assert settings.workflow_timeout_ms is None


def test_get_settings_is_cached_until_reset(monkeypatch):
    monkeypatch.setenv("STEPFLOW_MAX_CONCURRENCY", "3")
    first = get_settings()

    monkeypatch.setenv("STEPFLOW_MAX_CONCURRENCY", "5")
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().max_concurrency == 5
