"""Mailer Tests

Provider selection and failure reporting. No real email is sent.
"""

import smtplib

import mailer
from mailer import Mailer, build_invite_link


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

    def sendmail(self, from_email, to_emails, message):
        FakeSMTP.sent.append((from_email, to_emails, message))


def test_build_invite_link():
    assert build_invite_link('https://app.example.com/', 'abc') == 'https://app.example.com/accept-invite/abc'


def test_disabled_provider_reports_not_sent():
    result = Mailer(provider='none').send_invitation('b@x.com', 'abc', 'Team')
    assert result['sent'] is False


def test_sendgrid_without_key_reports_not_sent():
    result = Mailer(provider='sendgrid', from_email='noreply@example.com').send_invitation('b@x.com', 'abc', 'Team')
    assert result == {'sent': False, 'error': 'SendGrid is not configured'}


def test_sendgrid_error_is_returned_not_raised(monkeypatch):
    class BrokenClient:
        def __init__(self, api_key):
            pass

        def send(self, mail):
            raise RuntimeError('sendgrid unavailable')

    monkeypatch.setattr(mailer, 'SendGridAPIClient', BrokenClient)
    sender = Mailer(provider='sendgrid', from_email='noreply@example.com', sendgrid_api_key='key')

    result = sender.send_invitation('b@x.com', 'abc', 'Team')

    assert result['sent'] is False
    assert 'sendgrid unavailable' in result['error']


def test_smtp_sends_invite_link(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtplib, 'SMTP', FakeSMTP)
    sender = Mailer(provider='smtp', from_email='noreply@example.com', app_url='https://app.example.com')

    result = sender.send_invitation('b@x.com', 'abc', 'Team', inviter_name='Alice Smith')

    assert result == {'sent': True, 'provider': 'smtp'}
    from_email, to_emails, message = FakeSMTP.sent[0]
    assert to_emails == ['b@x.com']
    assert 'https://app.example.com/accept-invite/abc' in message


def test_smtp_failure_is_returned_not_raised(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, 'no')

    monkeypatch.setattr(smtplib, 'SMTP', refuse)
    sender = Mailer(provider='smtp', from_email='noreply@example.com')

    result = sender.send_invitation('b@x.com', 'abc', 'Team')

    assert result['sent'] is False


def test_from_config():
    sender = Mailer.from_config({
        'EMAIL_PROVIDER': 'SMTP',
        'MAIL_DEFAULT_SENDER': 'noreply@example.com',
        'MAIL_SERVER': 'smtp.example.com',
        'MAIL_PORT': 2525,
        'APP_URL': 'https://app.example.com',
    })

    assert sender.provider == 'smtp'
    assert sender.smtp_port == 2525
    assert sender.app_url == 'https://app.example.com'
