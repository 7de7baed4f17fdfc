import logging

import requests

logger = logging.getLogger("portal.mail")


class Mailer:
    """Outbound mail through an HTTP mail relay (MAIL_WEBHOOK_URL).

    Without a relay configured messages are only logged, which is what local
    development uses.
    """

    def __init__(self, settings):
        self.settings = settings

    def send(self, to: str, subject: str, body: str) -> bool:
        url = self.settings.mail_webhook_url
        if not url:
            logger.info("Mail relay not configured; not sending %r to %s", subject, to)
            return False
        payload = {"from": self.settings.mail_from, "to": to, "subject": subject, "text": body}
        try:
            resp = requests.post(url, json=payload, timeout=10)
            resp.raise_for_status()
        except requests.RequestException:
            logger.exception("Mail delivery to %s failed", to)
            return False
        return True

    def send_invitation(self, to: str, token: str, company_name: str) -> bool:
        link = f"{self.settings.public_base_url}/invite/{token}"
        body = (
            f"Hallo,\n\n{company_name} lädt Sie zum Objektbetreuer Portal ein.\n"
            f"Bitte legen Sie Ihr Konto über folgenden Link an:\n\n{link}\n\n"
            f"Die Einladung ist {self.settings.invitation_ttl_days} Tage gültig."
        )
        return self.send(to, f"Einladung von {company_name}", body)

    def send_password_reset(self, to: str, token: str) -> bool:
        link = f"{self.settings.public_base_url}/reset-password/{token}"
        body = (
            "Hallo,\n\nüber folgenden Link können Sie ein neues Passwort vergeben:\n\n"
            f"{link}\n\nFalls Sie das nicht angefordert haben, ignorieren Sie diese E-Mail."
        )
        return self.send(to, "Passwort zurücksetzen", body)
