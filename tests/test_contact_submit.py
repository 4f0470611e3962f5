# tests/test_contact_submit.py
import html

from fastapi.testclient import TestClient

from tests.helpers.ledger import read_ledger

import app


def test_japanese_submission_is_saved_and_echoed(client, ledger_path, valid_form):
    r = client.post("/contact", data=valid_form)

    assert r.status_code == 200
    assert "送信完了" in r.text
    for value in ("田中", "tanaka@example.com", "相談"):
        assert html.escape(value, quote=True) in r.text

    rows = read_ledger(ledger_path)
    assert rows[0] == list(app.LEDGER_HEADER)
    assert len(rows) == 2

    created_at, name, email, tel, kind, message, ip, user_agent = rows[1]
    assert created_at
    assert created_at.endswith("+09:00")
    assert (name, email, tel, kind, message) == (
        "田中",
        "tanaka@example.com",
        "03-1234-5678",
        "相談",
        "よろしくお願いします",
    )
    assert ip == "testclient"
    assert user_agent == "testclient"


def test_ledger_is_created_lazily(client, ledger_path, valid_form):
    assert not ledger_path.parent.exists()

    client.post("/contact", data={**valid_form, "email": "not-an-email"})
    assert not ledger_path.exists()

    client.post("/contact", data=valid_form)
    assert ledger_path.exists()


def test_n_submissions_give_one_header_and_n_rows(client, ledger_path, valid_form):
    messages = [
        "one",
        'comma, and "quotes"',
        "line1\r\nline2\rline3",
    ]
    for m in messages:
        r = client.post("/contact", data={**valid_form, "message": m})
        assert r.status_code == 200

    rows = read_ledger(ledger_path)
    assert rows.count(list(app.LEDGER_HEADER)) == 1
    assert rows[0] == list(app.LEDGER_HEADER)
    assert len(rows) == 1 + len(messages)
    assert all(len(row) == 8 for row in rows)
    assert [row[5] for row in rows[1:]] == [
        "one",
        'comma, and "quotes"',
        "line1\nline2\nline3",
    ]


def test_fields_are_trimmed_and_truncated(client, ledger_path, valid_form):
    form = {
        **valid_form,
        "name": "  " + "あ" * 200 + "  ",
        "message": "x" * 5000,
        "tel": "0" * 50,
    }
    r = client.post("/contact", data=form)
    assert r.status_code == 200
    assert "あ" * 120 in r.text
    assert "あ" * 121 not in r.text

    row = read_ledger(ledger_path)[1]
    assert row[1] == "あ" * 120
    assert row[3] == "0" * 40
    assert row[5] == "x" * 4000


def test_tel_is_optional(client, ledger_path, valid_form):
    form = dict(valid_form)
    del form["tel"]
    r = client.post("/contact", data=form)
    assert r.status_code == 200
    assert read_ledger(ledger_path)[1][3] == ""


def test_whitespace_only_honeypot_is_accepted(client, valid_form):
    r = client.post("/contact", data={**valid_form, "company": "   "})
    assert r.status_code == 200


def test_echoed_fields_are_escaped(client, ledger_path, valid_form):
    payload = '<script>alert("x")</script>'
    r = client.post("/contact", data={**valid_form, "name": payload, "type": "a'b"})

    assert r.status_code == 200
    assert "<script>" not in r.text
    assert html.escape(payload, quote=True) in r.text
    assert "a&#x27;b" in r.text

    # the ledger keeps the raw (normalized) text
    assert read_ledger(ledger_path)[1][1] == payload


def test_multipart_submission_is_accepted(client, ledger_path, valid_form):
    files = {k: (None, v) for k, v in valid_form.items()}
    r = client.post("/contact", files=files)
    assert r.status_code == 200
    assert read_ledger(ledger_path)[1][1] == "田中"


def test_forwarded_for_is_used_behind_trusted_proxy(ledger_path, valid_form):
    """peer 127.0.0.1 は既定の TRUSTED_PROXY_CIDRS に含まれる"""
    proxied = TestClient(app.app, client=("127.0.0.1", 50000))
    r = proxied.post(
        "/contact",
        data=valid_form,
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "Mozilla/5.0"},
    )
    assert r.status_code == 200

    row = read_ledger(ledger_path)[1]
    assert row[6] == "203.0.113.7"
    assert row[7] == "Mozilla/5.0"


def test_back_link_and_title_follow_settings(monkeypatch, client, valid_form):
    monkeypatch.setenv("BACK_URL", "/#contact")
    monkeypatch.setenv("SITE_NAME", "Example & Co")
    app.init_settings()

    r = client.post("/contact", data=valid_form)
    assert 'href="/#contact"' in r.text
    assert "送信完了 | Example &amp; Co" in r.text


def test_forwarded_for_is_ignored_from_untrusted_peer(client, ledger_path, valid_form):
    """TestClient の既定 peer ("testclient") は proxy ではないので XFF は無視する"""
    r = client.post("/contact", data=valid_form, headers={"X-Forwarded-For": "203.0.113.7"})
    assert r.status_code == 200
    assert read_ledger(ledger_path)[1][6] == "testclient"
