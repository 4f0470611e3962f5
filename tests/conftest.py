# contact-intake/tests/conftest.py

import pytest
from fastapi.testclient import TestClient

import app

STATE_KEYS = ("csp_mode", "csp_policy", "spam_filters")


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """
    全テストで DATA_DIR を tmp_path 配下に隔離する（実 ledger には絶対に書かない）。

    テストは lifespan を通らないため、settings と app.state をここで初期化し、
    終了後に元へ戻す。
    """
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    for key in ("CSP_MODE", "LEDGER_FILENAME", "LEDGER_LOCK_TIMEOUT", "TIMEZONE", "BACK_URL", "SITE_NAME", "TRUSTED_PROXY_CIDRS"):
        monkeypatch.delenv(key, raising=False)

    old_state = {k: getattr(app.app.state, k, None) for k in STATE_KEYS}
    old_state_has = {k: hasattr(app.app.state, k) for k in STATE_KEYS}

    monkeypatch.setattr(app, "_SETTINGS", None)
    app.init_settings()
    app.init_app_state(app.app, app.get_settings())

    yield

    for k in STATE_KEYS:
        if not old_state_has[k]:
            if hasattr(app.app.state, k):
                delattr(app.app.state, k)
        else:
            setattr(app.app.state, k, old_state[k])


@pytest.fixture
def client():
    return TestClient(app.app)


@pytest.fixture
def ledger_path():
    return app.get_settings().ledger_path


@pytest.fixture
def valid_form():
    return {
        "name": "田中",
        "email": "tanaka@example.com",
        "tel": "03-1234-5678",
        "type": "相談",
        "message": "よろしくお願いします",
        "company": "",
    }
