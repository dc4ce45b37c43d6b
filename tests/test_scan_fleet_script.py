import importlib.util
import logging
import os

SCRIPT = os.path.join(os.path.dirname(__file__), "..", "scripts", "scan_fleet.py")


def _load_script():
    spec = importlib.util.spec_from_file_location("scan_fleet_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _clean_env(monkeypatch, tmp_path):
    for name in ("GITHUB_TOKEN", "SLACK_WEBHOOK_URL", "FLEET_CACHE_BACKEND", "FLEET_DETECTORS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FLEET_CACHE_PATH", str(tmp_path / "cache.json"))


def test_main_applies_configured_log_level(monkeypatch, tmp_path) -> None:
    root = logging.getLogger()
    monkeypatch.setattr(root, "level", root.level)
    _clean_env(monkeypatch, tmp_path)
    monkeypatch.setenv("FLEET_ORGANIZATIONS", "acme")
    monkeypatch.setenv("LOG_LEVEL", "warning")
    script = _load_script()
    seen = []
    monkeypatch.setattr(script, "scan_fleet", lambda settings, **kwargs: seen.append(settings) or [])

    assert script.main() == 0
    assert root.level == logging.WARNING
    assert seen[0].log_level == "WARNING"
    assert (tmp_path / "cache.json").exists()


def test_main_returns_2_on_invalid_configuration(monkeypatch, tmp_path) -> None:
    _clean_env(monkeypatch, tmp_path)
    monkeypatch.delenv("FLEET_ORGANIZATIONS", raising=False)
    script = _load_script()

    assert script.main() == 2
