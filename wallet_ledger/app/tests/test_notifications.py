import smtplib

from fastapi import BackgroundTasks

from ..core.config import Settings
from ..services.notifications import BackgroundNotifier, LogTransport, SmtpTransport, build_mail_transport


class FailingTransport:
    def send(self, email, subject, body):
        raise RuntimeError("mail server exploded")


def test_background_notifier_defers_delivery() -> None:
    sent = []

    class Recorder:
        def send(self, email, subject, body):
            sent.append(email)
            return True

    tasks = BackgroundTasks()
    notifier = BackgroundNotifier(Recorder(), tasks)
    assert notifier.send("alice@example.com", "Hi", "body") is True
    assert sent == []
    assert len(tasks.tasks) == 1
    assert notifier.send("", "Hi", "body") is False


def test_delivery_errors_are_swallowed() -> None:
    notifier = BackgroundNotifier(FailingTransport())
    assert notifier.send("alice@example.com", "Hi", "body") is False


def test_smtp_failure_returns_false(monkeypatch) -> None:
    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, b"unavailable")

    monkeypatch.setattr(smtplib, "SMTP_SSL", BrokenSMTP)
    transport = SmtpTransport(Settings(smtp_host="smtp.example.com"))
    assert transport.send("alice@example.com", "Hi", "body") is False


def test_transport_selection() -> None:
    assert isinstance(build_mail_transport(Settings(smtp_host=None)), LogTransport)
    assert isinstance(build_mail_transport(Settings(smtp_host="smtp.example.com")), SmtpTransport)
