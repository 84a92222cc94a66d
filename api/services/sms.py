import logging
import asyncio
from typing import Dict, Any, Optional

from twilio.twiml.messaging_response import MessagingResponse

from api.services.chat import ChatService
from api.services.usage import UsageService
from lib.database import Database
from lib.error_handler import AppError, UpstreamError, ValidationError, require_text
from lib.models import ActionType, AuthenticatedUser
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

CLOSING_MESSAGE = (
    "Thanks for the conversation! This AI chat has reached its planned conclusion. "
    "Feel free to start a new conversation anytime."
)

def empty_twiml() -> str:
    return str(MessagingResponse())

def fallback_opening(topic: str) -> str:
    return f"Hi! Let's chat about {topic}. What interests you most about this topic?"

class SMSService:
    def __init__(self, twilio_client: TwilioClient, database: Database, usage_service: UsageService, chat_service: ChatService):
        self.client = twilio_client
        self.db = database
        self.usage = usage_service
        self.chat = chat_service
        logger.info(f"SMS service initialized with phone number: {twilio_client.phone_number}")

    async def send_sms(self, to_number: str, message: str) -> str:
        """Send SMS message, returning the Twilio SID"""
        logger.info(f"Sending SMS to {to_number}: {message[:20]}...")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: self.client.send_message(to_number, message)
        )

    async def start_conversation(
        self,
        user: AuthenticatedUser,
        phone_number: str,
        topic: str,
        message_count: Any
    ) -> Dict[str, Any]:
        """Open an AI-driven SMS conversation with a fixed number of exchanges"""
        require_text("phone_number, topic, and message_count are required", phone_number=phone_number, topic=topic)
        if message_count is None or message_count == '':
            raise ValidationError("phone_number, topic, and message_count are required")
        if isinstance(message_count, bool):
            raise ValidationError("message_count must be a positive integer")
        try:
            message_count = int(message_count)
        except (TypeError, ValueError):
            raise ValidationError("message_count must be a positive integer")
        if message_count < 1:
            raise ValidationError("message_count must be a positive integer")

        self.usage.check(user.id, ActionType.TEXT)

        conversation = self.db.insert_sms_conversation({
            'user_id': user.id,
            'phone_number': phone_number,
            'topic': topic,
            'message_count': message_count,
            'status': 'active',
            'current_exchange': 0
        })
        logger.info(f"Created SMS conversation {conversation['id']} for {user.id}")

        warning = None
        try:
            first_message = await self.chat.opening_message(topic, message_count)
        except AppError as e:
            logger.error(f"Opening message generation failed: {e.message}")
            first_message = None
        if not first_message:
            logger.info("No AI message generated, using fallback")
            first_message = fallback_opening(topic)
            warning = 'OpenAI unavailable, used fallback message'

        try:
            message_sid = await self.send_sms(phone_number, first_message)
        except AppError:
            self.db.update_sms_conversation(conversation['id'], {'status': 'failed'})
            raise

        self.db.insert_sms_message({
            'conversation_id': conversation['id'],
            'user_id': user.id,
            'phone_number': phone_number,
            'twilio_message_sid': message_sid,
            'direction': 'outbound',
            'message_text': first_message,
            'type': 'ai_conversation',
            'status': 'sent'
        })

        self.usage.increment(user.id, ActionType.TEXT)

        response = {
            'success': True,
            'conversation_id': conversation['id'],
            'first_message': first_message,
            'message': 'SMS conversation started successfully'
        }
        if warning:
            response['warning'] = warning
        return response

    async def send_single(self, user: AuthenticatedUser, phone_number: str, message_text: str) -> Dict[str, Any]:
        require_text("phone_number and message_text are required", phone_number=phone_number, message_text=message_text)

        self.usage.check(user.id, ActionType.TEXT)

        message_sid = await self.send_sms(phone_number, message_text)
        self.db.insert_sms_message({
            'user_id': user.id,
            'phone_number': phone_number,
            'twilio_message_sid': message_sid,
            'direction': 'outbound',
            'message_text': message_text,
            'type': 'single',
            'status': 'sent'
        })

        self.usage.increment(user.id, ActionType.TEXT)
        return {'success': True, 'message_sid': message_sid, 'message': 'SMS sent successfully'}

    async def handle_incoming(self, from_number: str, body: str, message_sid: str) -> str:
        """Advance the sender's active conversation by one exchange. Returns TwiML."""
        if not from_number or not body or not message_sid:
            raise ValidationError("Missing required webhook data")

        logger.info(f"Received SMS from {from_number}: {body}")
        conversation = self.db.get_active_conversation(from_number)

        if not conversation:
            logger.info(f"No active conversation found for {from_number}")
            self.db.insert_sms_message({
                'user_id': None,
                'phone_number': from_number,
                'twilio_message_sid': message_sid,
                'direction': 'inbound',
                'message_text': body,
                'type': 'standalone',
                'status': 'received'
            })
            return empty_twiml()

        history = self.db.get_conversation_messages(conversation['id'])
        self._store_message(conversation, from_number, message_sid, body, 'inbound', 'received')

        exchange = (conversation.get('current_exchange') or 0) + 1
        message_count = conversation['message_count']

        if exchange >= message_count:
            await self._complete_conversation(conversation, from_number, exchange)
            return empty_twiml()

        reply = await self.chat.reply(
            topic=conversation['topic'],
            history=history,
            message=body,
            exchange=exchange,
            message_count=message_count
        )
        if not reply:
            raise UpstreamError("No AI response generated")

        reply_sid = await self.send_sms(from_number, reply)
        self._store_message(conversation, from_number, reply_sid, reply, 'outbound', 'sent')
        self.db.update_sms_conversation(conversation['id'], {'current_exchange': exchange})

        logger.info(f"AI response sent. Exchange {exchange}/{message_count}")
        return empty_twiml()

    async def _complete_conversation(self, conversation: Dict[str, Any], to_number: str, exchange: int) -> None:
        logger.info(f"Conversation {conversation['id']} completed ({exchange}/{conversation['message_count']})")
        self.db.update_sms_conversation(conversation['id'], {
            'status': 'completed',
            'current_exchange': exchange
        })
        try:
            closing_sid = await self.send_sms(to_number, CLOSING_MESSAGE)
        except AppError as e:
            logger.error(f"Error sending final message: {e.message}")
            return
        self._store_message(conversation, to_number, closing_sid, CLOSING_MESSAGE, 'outbound', 'sent')

    def _store_message(
        self,
        conversation: Dict[str, Any],
        phone_number: str,
        message_sid: Optional[str],
        text: str,
        direction: str,
        status: str
    ) -> None:
        self.db.insert_sms_message({
            'conversation_id': conversation['id'],
            'user_id': conversation.get('user_id'),
            'phone_number': phone_number,
            'twilio_message_sid': message_sid,
            'direction': direction,
            'message_text': text,
            'type': 'ai_conversation',
            'status': status
        })
