import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


TEST_API_SECRET = "test-edge-secret"


@pytest.fixture()
def app_ctx(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("EDGE_API_SECRET", TEST_API_SECRET)
    monkeypatch.setenv("DATA_DIR", str(data_dir))
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("APP_VERSION", "test")
    for name in ("BLOCKED_PATHS", "BLOCKED_USER_AGENTS", "ALLOW_LIST", "BOT_PROTECTION_ENABLED"):
        monkeypatch.delenv(name, raising=False)

    for name in list(sys.modules.keys()):
        if name == "household_edge" or name.startswith("household_edge."):
            del sys.modules[name]

    import importlib

    main = importlib.import_module("household_edge.main")
    return {"app": main.app, "data_dir": data_dir, "secret": TEST_API_SECRET}


@pytest.fixture()
def client(app_ctx: dict):
    with TestClient(app_ctx["app"]) as c:
        yield c


@pytest.fixture()
def data_dir(app_ctx: dict) -> Path:
    return app_ctx["data_dir"]


@pytest.fixture()
def api_secret(app_ctx: dict) -> str:
    return app_ctx["secret"]


@pytest.fixture()
def caller_headers(api_secret: str):
    def make(household_id: str = "hh1", caller_id: str = "u1") -> dict:
        return {"X-Api-Key": api_secret, "X-Caller-Id": caller_id, "X-Household-Id": household_id}

    return make
