import logging
import smtplib
from email.message import EmailMessage

from settings import Settings

logger = logging.getLogger("flamecrumble.mailer")


class Mailer:
    """Sends verification codes over SMTP. Never raises; returns False on failure."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _message(self, to: str, code: str) -> EmailMessage:
        store = self.settings.store_name
        ttl = self.settings.verification_code_ttl_min
        msg = EmailMessage()
        msg["Subject"] = f"{store}: Email Verification Code"
        msg["From"] = f"{store} <{self.settings.email_from}>"
        msg["To"] = to
        msg.set_content(
            f"Thank you for registering with {store}!\n\n"
            f"Please use the following code to verify your email address: {code}\n\n"
            f"This code is valid for {ttl} minutes.\n"
            "If you did not request this, please ignore this email.\n"
        )
        return msg

    def send_verification_code(self, email: str, code: str) -> bool:
        if not self.settings.smtp_host:
            if self.settings.debug:
                logger.warning("SMTP not configured; verification code for %s is %s", email, code)
            else:
                logger.warning("SMTP not configured; verification code for %s not sent", email)
            return False
        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
                smtp.starttls()
                if self.settings.smtp_username:
                    smtp.login(self.settings.smtp_username, self.settings.smtp_password or "")
                smtp.send_message(self._message(email, code))
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send verification email to %s: %s", email, exc)
            return False
        logger.info("Verification email sent to %s", email)
        return True
