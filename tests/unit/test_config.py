# tests/unit/test_config.py
import pytest

from core.config import Settings, normalize_status


def test_defaults_match_plugin_options() -> None:
    settings = Settings()

    assert settings.endpoint == "https://track.pixelfly.io/e"
    assert settings.delayed_enabled is True
    assert settings.delayed_payment_methods == ["cod"]
    assert settings.delayed_fire_on_status == ["processing", "completed"]
    assert settings.is_configured is False


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PIXELFLY_API_KEY", "abc")
    monkeypatch.setenv("PIXELFLY_DELAYED_PAYMENT_METHODS", "cod, bacs ,cheque")
    monkeypatch.setenv("PIXELFLY_DELAYED_FIRE_ON_STATUS", "completed")
    monkeypatch.setenv("PIXELFLY_DELAYED_ENABLED", "no")
    monkeypatch.setenv("PIXELFLY_TIMEOUT", "2.5")

    settings = Settings.from_env()

    assert settings.is_configured is True
    assert settings.delayed_payment_methods == ["cod", "bacs", "cheque"]
    assert settings.delayed_fire_on_status == ["completed"]
    assert settings.delayed_enabled is False
    assert settings.timeout == 2.5


def test_delay_and_trigger_checks() -> None:
    settings = Settings(delayed_fire_on_status=["wc-processing"])

    assert settings.is_delay_method("cod") is True
    assert settings.is_delay_method("stripe") is False
    assert settings.is_trigger_status("processing") is True
    assert settings.is_trigger_status("wc-processing") is True
    assert settings.is_trigger_status("completed") is False

    settings.delayed_enabled = False
    assert settings.is_delay_method("cod") is False


@pytest.mark.parametrize(
    "raw, expected",
    [("wc-completed", "completed"), (" Processing ", "processing"), ("", "")],
)
def test_normalize_status(raw: str, expected: str) -> None:
    assert normalize_status(raw) == expected
