from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("SW_DB_URL", raising=False)
    monkeypatch.delenv("SW_ADMIN_TOKEN", raising=False)
    monkeypatch.delenv("SW_CONFIG_PATH", raising=False)
    monkeypatch.delenv("SW_LOG_FILE", raising=False)
