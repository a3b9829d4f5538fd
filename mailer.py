import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = logging.getLogger(__name__)

# ============================================
# 邀請信內容
# ============================================

def build_invite_link(app_url, token):
    return f"{app_url.rstrip('/')}/accept-invite/{token}"


def _build_invite_content(invite_link, team_name, inviter_name, expires_days):
    inviter = inviter_name or 'Someone on your team'
    subject = f"You're invited to join {team_name}"

    body_lines = [
        f'{inviter} invited you to join {team_name}.',
        f'Accept the invitation: {invite_link}',
        f'This link expires in {expires_days * 24} hours.',
        "If you didn't expect this invitation, you can safely ignore this email.",
    ]
    html_content = (
        "<h1>You've been invited!</h1>"
        f'<p>{inviter} invited you to join <strong>{team_name}</strong>.</p>'
        f'<p><a href="{invite_link}">Accept Invitation</a></p>'
        f'<p>This link expires in {expires_days * 24} hours.</p>'
        "<p>If you didn't expect this invitation, you can safely ignore this email.</p>"
    )
    plain_content = '\n'.join(body_lines)
    return subject, plain_content, html_content

# ============================================
# Mailer
# ============================================

class Mailer:
    """
    寄送邀請信

    支援 SendGrid (預設) 和 SMTP,EMAIL_PROVIDER = 'none' 時不寄信。
    寄信失敗不會丟 exception,而是回傳 {'sent': False, 'error': ...},
    由呼叫端決定要不要記 log
    """

    def __init__(
        self,
        provider='sendgrid',
        from_email=None,
        from_name='Task Tracker',
        sendgrid_api_key=None,
        smtp_host='smtp.gmail.com',
        smtp_port=587,
        smtp_use_tls=True,
        smtp_username=None,
        smtp_password=None,
        app_url='http://localhost:3000',
    ):
        self.provider = (provider or 'none').lower()
        self.from_email = from_email
        self.from_name = from_name
        self.sendgrid_api_key = sendgrid_api_key
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_use_tls = smtp_use_tls
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.app_url = app_url

    @classmethod
    def from_config(cls, config):
        """從 Flask app.config 建立"""
        return cls(
            provider=config.get('EMAIL_PROVIDER'),
            from_email=config.get('MAIL_DEFAULT_SENDER'),
            from_name=config.get('MAIL_SENDER_NAME', 'Task Tracker'),
            sendgrid_api_key=config.get('SENDGRID_API_KEY'),
            smtp_host=config.get('MAIL_SERVER'),
            smtp_port=config.get('MAIL_PORT', 587),
            smtp_use_tls=config.get('MAIL_USE_TLS', True),
            smtp_username=config.get('MAIL_USERNAME'),
            smtp_password=config.get('MAIL_PASSWORD'),
            app_url=config.get('APP_URL', 'http://localhost:3000'),
        )

    def _send_with_sendgrid(self, to_email, subject, plain_content, html_content):
        if not self.sendgrid_api_key or not self.from_email:
            return {'sent': False, 'error': 'SendGrid is not configured'}

        try:
            mail = Mail(
                from_email=(self.from_email, self.from_name),
                to_emails=to_email,
                subject=subject,
                plain_text_content=plain_content,
                html_content=html_content,
            )
            response = SendGridAPIClient(self.sendgrid_api_key).send(mail)
            sent = 200 <= response.status_code < 300
            if sent:
                logger.info(f"Email sent via SendGrid to {to_email}")
            return {'sent': sent, 'status_code': response.status_code, 'provider': 'sendgrid'}
        except Exception as exc:
            logger.error(f"SendGrid email error: {exc}")
            return {'sent': False, 'error': str(exc), 'provider': 'sendgrid'}

    def _send_with_smtp(self, to_email, subject, plain_content, html_content):
        if not self.smtp_host or not self.from_email:
            return {'sent': False, 'error': 'SMTP is not configured'}

        message = MIMEMultipart('alternative')
        message['Subject'] = subject
        message['From'] = formataddr((self.from_name, self.from_email))
        message['To'] = to_email
        message.attach(MIMEText(plain_content, 'plain'))
        message.attach(MIMEText(html_content, 'html'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                if self.smtp_use_tls:
                    server.starttls()
                if self.smtp_username and self.smtp_password:
                    server.login(self.smtp_username, self.smtp_password)
                server.sendmail(self.from_email, [to_email], message.as_string())
            logger.info(f"Email sent via SMTP to {to_email}")
            return {'sent': True, 'provider': 'smtp'}
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"SMTP email error: {exc}")
            return {'sent': False, 'error': str(exc), 'provider': 'smtp'}

    def send(self, to_email, subject, plain_content, html_content):
        if self.provider == 'sendgrid':
            return self._send_with_sendgrid(to_email, subject, plain_content, html_content)
        if self.provider == 'smtp':
            return self._send_with_smtp(to_email, subject, plain_content, html_content)
        return {'sent': False, 'error': 'Email delivery is disabled'}

    def send_invitation(self, to_email, token, team_name, inviter_name=None, expires_days=3):
        """寄邀請信,信裡的連結是 APP_URL/accept-invite/<token>"""
        invite_link = build_invite_link(self.app_url, token)
        subject, plain_content, html_content = _build_invite_content(
            invite_link, team_name, inviter_name, expires_days
        )
        return self.send(to_email, subject, plain_content, html_content)
