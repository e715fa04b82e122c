import logging
import smtplib

import mailer
from mailer import Mailer
from settings import Settings


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


class BrokenSMTP(FakeSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPRecipientsRefused({})


def test_unconfigured_mailer_does_not_send_or_log_code(monkeypatch, caplog):
    monkeypatch.setattr(mailer.smtplib, "SMTP", BrokenSMTP)
    with caplog.at_level(logging.WARNING, logger="flamecrumble.mailer"):
        assert Mailer(Settings()).send_verification_code("ann@mailbox.org", "123456") is False
    assert "ann@mailbox.org" in caplog.text
    assert "123456" not in caplog.text


def test_debug_mode_logs_unsent_code(caplog):
    with caplog.at_level(logging.WARNING, logger="flamecrumble.mailer"):
        assert Mailer(Settings(debug=True)).send_verification_code("ann@mailbox.org", "654321") is False
    assert "654321" in caplog.text


def test_verification_code_is_mailed(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    settings = Settings(smtp_host="smtp.mailbox.org", smtp_username="shop", smtp_password="pw")

    assert Mailer(settings).send_verification_code("ann@mailbox.org", "123456") is True

    msg = FakeSMTP.sent[0]
    assert msg["To"] == "ann@mailbox.org"
    assert "123456" in msg.get_content()
    assert "15 minutes" in msg.get_content()


def test_smtp_failure_is_reported_not_raised(monkeypatch):
    monkeypatch.setattr(mailer.smtplib, "SMTP", BrokenSMTP)
    settings = Settings(smtp_host="smtp.mailbox.org")
    assert Mailer(settings).send_verification_code("ann@mailbox.org", "123456") is False
