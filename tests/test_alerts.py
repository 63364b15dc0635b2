import pytest

from rrc import alerts
from rrc.events import RolloutEvent
from rrc.settings import Settings


@pytest.fixture
def sent(monkeypatch):
    mails = []
    monkeypatch.setattr(alerts, "send_email", lambda subject, body: mails.append((subject, body)) or True)
    return mails


@pytest.mark.parametrize("state", ["Failed", "RolledBack"])
def test_alert_on_bad_terminal_state(sent, state):
    alerts.alert_sink(RolloutEvent("state", "health gate timed out", target="web", rollout_id="r-1", data={"state": state}))

    assert len(sent) == 1
    subject, body = sent[0]
    assert subject == f"Rollout {state}: web (r-1)"
    assert "health gate timed out" in body


@pytest.mark.parametrize(
    "event",
    [
        RolloutEvent("state", "ok", data={"state": "Succeeded"}),
        RolloutEvent("state", "go", data={"state": "InProgress"}),
        RolloutEvent("health", "sample", data={"state": "Failed"}),
    ],
)
def test_no_alert_for_other_events(sent, event):
    alerts.alert_sink(event)
    assert sent == []


def test_send_email_disabled(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=False))
    assert alerts.send_email("s", "b") is False


def test_send_email_requires_credentials(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=True, smtp_user=None))
    assert alerts.send_email("s", "b") is False


def test_send_email_smtp_failure_is_reported(monkeypatch):
    monkeypatch.setattr(
        alerts,
        "settings",
        Settings(
            enable_email=True,
            smtp_host="smtp.test",
            smtp_port=587,
            smtp_user="u",
            smtp_password="p",
            email_from="rrc@test",
            email_to="ops@test",
        ),
    )

    def refuse(host, port):
        raise ConnectionRefusedError(host)

    monkeypatch.setattr(alerts.smtplib, "SMTP", refuse)
    assert alerts.send_email("s", "b") is False
