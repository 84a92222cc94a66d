import logging
from typing import Optional

import requests
from pydantic import BaseModel

from lib.config import Settings

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = 'https://api.sendgrid.com/v3/mail/send'

class SendResult(BaseModel):
    sent: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

def to_html(text: str) -> str:
    return text.replace('\n\n', '<br><br>').replace('\n', '<br>')

class SendGridClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.api_key = settings.sendgrid_api_key
        self.default_from = settings.sendgrid_from_email
        self.session = session or requests.Session()

    def send(self, to_email: str, subject: str, body: str, from_email: Optional[str] = None) -> SendResult:
        """Send a plain-text + HTML email. Delivery failures are reported, not raised."""
        payload = {
            'personalizations': [{
                'to': [{'email': to_email}],
                'subject': subject
            }],
            'from': {'email': from_email or self.default_from},
            'content': [
                {'type': 'text/plain', 'value': body},
                {'type': 'text/html', 'value': to_html(body)}
            ]
        }
        try:
            response = self.session.post(
                SENDGRID_SEND_URL,
                json=payload,
                headers={'Authorization': f"Bearer {self.api_key}"}
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"SendGrid error: {str(e)}")
            return SendResult(sent=False, error=str(e))

        message_id = response.headers.get('x-message-id')
        logger.info(f"Email sent to {to_email} (message id {message_id})")
        return SendResult(sent=True, message_id=message_id)
