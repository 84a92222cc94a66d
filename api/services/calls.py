import logging
import asyncio
from typing import Dict, Any, Optional

from twilio.twiml.voice_response import VoiceResponse, Connect

from api.services.usage import UsageService
from lib.config import Settings
from lib.database import Database, utcnow_iso
from lib.error_handler import AppError, ValidationError, require_text
from lib.models import ActionType, AuthenticatedUser
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

MACHINE_ANSWERS = ('machine_start', 'fax')
MACHINE_NOTICE = "It looks like you couldn't connect with talkah, try again another time."
CALL_ERROR_NOTICE = "An error occurred, please try again later."

# Twilio CallStatus -> timestamp column stamped when it arrives
STATUS_TIMESTAMPS = {
    'initiated': 'initiated_time',
    'ringing': 'ringing_time',
    'answered': 'answered_time',
    'in-progress': 'answered_time',
    'completed': 'ended_time',
    'busy': 'ended_time',
    'failed': 'ended_time',
    'no-answer': 'ended_time',
    'canceled': 'ended_time',
}

def hangup_twiml(notice: str) -> str:
    response = VoiceResponse()
    response.say(notice)
    response.hangup()
    return str(response)

class CallService:
    def __init__(self, twilio_client: TwilioClient, database: Database, usage_service: UsageService, settings: Settings):
        self.client = twilio_client
        self.db = database
        self.usage = usage_service
        self.settings = settings

    async def initiate_call(self, user: AuthenticatedUser, phone_number: str, topic: str) -> Dict[str, Any]:
        """Place an outbound call that streams into the voice agent"""
        require_text("Missing user_phone_number or topic", user_phone_number=phone_number, topic=topic)

        self.usage.check(user.id, ActionType.CALL)

        loop = asyncio.get_running_loop()
        try:
            call_sid = await loop.run_in_executor(
                None,
                lambda: self.client.create_call(
                    phone_number,
                    self.settings.callback_url('twilio-voice-connect-stream'),
                    status_callback=self.settings.callback_url('twilio-status-callback'),
                    amd_callback=self.settings.callback_url('amd-callback')
                )
            )
        except AppError:
            self.db.insert_call({
                'user_id': user.id,
                'user_phone_number': phone_number,
                'topic': topic,
                'status': 'failed'
            })
            raise

        record = self.db.insert_call({
            'user_id': user.id,
            'user_phone_number': phone_number,
            'topic': topic,
            'twilio_call_sid': call_sid,
            'status': 'initiated'
        })
        logger.info(f"Call record {record['id']} stored for {call_sid}")

        self.usage.increment(user.id, ActionType.CALL)

        return {
            'success': True,
            'message': 'Call initiated successfully!',
            'twilio_call_sid': call_sid,
            'call_record_id': record['id']
        }

    def voice_connect(self, call_sid: str) -> str:
        """TwiML that bridges the answered call to the audio stream service"""
        if not call_sid:
            raise ValidationError("CallSid is required")

        call = self.db.get_call_by_sid(call_sid)
        if not call:
            logger.error(f"Call {call_sid} not found, hanging up")
            return hangup_twiml(CALL_ERROR_NOTICE)

        topic = call.get('topic') or ''
        try:
            self.db.update_call_by_sid(call_sid, {'status': 'answered', 'answered_time': utcnow_iso()})
        except AppError as e:
            logger.error(f"Error updating call status to answered: {e.message}")

        response = VoiceResponse()
        connect = Connect()
        stream = connect.stream(url=f"{self.settings.websocket_service_url.rstrip('/')}/ws/audio-stream")
        stream.parameter(name='callSid', value=call_sid)
        stream.parameter(name='topic', value=topic)
        response.append(connect)

        logger.info(f"Connecting call {call_sid} to audio stream for topic: {topic}")
        return str(response)

    def handle_status_callback(self, call_sid: Optional[str], call_status: Optional[str], duration: Optional[str] = None) -> None:
        """Record a Twilio call status transition. Usage was already counted at initiation."""
        if not call_sid or not call_status:
            raise ValidationError("Missing required webhook data: CallSid or CallStatus")

        status = call_status.lower()
        logger.info(f"Received status update: CallSid={call_sid}, Status={status}, Duration={duration}")

        now = utcnow_iso()
        fields = {'status': status, 'updated_at': now}
        column = STATUS_TIMESTAMPS.get(status)
        if column:
            fields[column] = now
        if column == 'ended_time' and duration:
            try:
                fields['duration_seconds'] = int(duration)
            except ValueError:
                logger.warning(f"Ignoring non-numeric CallDuration {duration!r}")

        updated = self.db.update_call_by_sid(call_sid, fields)
        if not updated:
            logger.warning(f"No call record matched {call_sid}")

    async def handle_amd(self, call_sid: Optional[str], answered_by: Optional[str]) -> bool:
        """Hang up with a notice when a machine or fax answered. Returns True if redirected."""
        logger.info(f"AMD result for {call_sid}: {answered_by}")
        if answered_by not in MACHINE_ANSWERS:
            return False
        if not call_sid:
            raise ValidationError("CallSid is required")

        twiml = hangup_twiml(MACHINE_NOTICE)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self.client.redirect_call(call_sid, twiml))
        logger.info(f"Call {call_sid} redirected to hangup TwiML")
        return True
