from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from typing import Optional, Dict
import logging
from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)

CALL_STATUS_EVENTS = ['initiated', 'ringing', 'answered', 'completed']

class TwilioClient:
    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.client = client or Client(
            settings.twilio_account_sid,
            settings.twilio_auth_token
        )
        self.phone_number = settings.twilio_phone_number
        self.messaging_service_sid = settings.twilio_messaging_service_sid
        self.validator = RequestValidator(settings.twilio_auth_token)

    def send_message(self, to_number: str, message: str) -> str:
        """Send an SMS message and return the message SID."""
        sender = (
            {'messaging_service_sid': self.messaging_service_sid}
            if self.messaging_service_sid else {'from_': self.phone_number}
        )
        try:
            message = self.client.messages.create(
                body=message,
                to=to_number,
                **sender
            )
            logger.info(f"Message sent successfully to {to_number}")
            return message.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            if e.code == 21608:  # Unverified number
                raise UpstreamError(str(e), "This phone number is not verified with our test account.")
            elif e.code == 21211:  # Invalid phone number
                raise UpstreamError(str(e), "Invalid phone number format.")
            else:
                raise UpstreamError(f"Failed to send message: {str(e)}", "Failed to send SMS")
        except Exception as e:
            logger.error(f"Unexpected error sending message: {str(e)}")
            raise UpstreamError(f"Unexpected error sending message: {str(e)}", "Failed to send SMS")

    def create_call(
        self,
        to_number: str,
        twiml_url: str,
        status_callback: str,
        amd_callback: Optional[str] = None
    ) -> str:
        """Start an outbound call and return the call SID."""
        params = {
            'to': to_number,
            'from_': self.phone_number,
            'url': twiml_url,
            'method': 'GET',
            'status_callback': status_callback,
            'status_callback_event': CALL_STATUS_EVENTS,
        }
        if amd_callback:
            params.update({
                'machine_detection': 'Enable',
                'async_amd': 'true',
                'async_amd_status_callback': amd_callback,
            })
        try:
            call = self.client.calls.create(**params)
            logger.info(f"Twilio call initiated. SID: {call.sid}")
            return call.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error creating call: {str(e)}")
            if e.code == 21211:
                raise UpstreamError(str(e), "Invalid phone number format.")
            raise UpstreamError(f"Failed to create call: {str(e)}", "Failed to initiate call")

    def redirect_call(self, call_sid: str, twiml: str) -> None:
        """Replace the TwiML of a live call"""
        try:
            self.client.calls(call_sid).update(twiml=twiml)
        except TwilioRestException as e:
            logger.error(f"Twilio error redirecting call {call_sid}: {str(e)}")
            raise UpstreamError(f"Failed to redirect call: {str(e)}")

    def is_valid_request(self, url: str, params: Dict[str, str], signature: Optional[str]) -> bool:
        if not signature:
            return False
        return self.validator.validate(url, params, signature)
