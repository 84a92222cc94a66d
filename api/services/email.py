import logging
import asyncio
from typing import Dict, Any, Optional

from api.services.chat import ChatService
from api.services.usage import UsageService
from lib.database import Database
from lib.email_client import SendGridClient
from lib.error_handler import UpstreamError, ValidationError, require_text
from lib.models import ActionType, AuthenticatedUser

logger = logging.getLogger(__name__)

AI_GENERATED = 'ai_generated'

class EmailService:
    def __init__(self, email_client: SendGridClient, database: Database, usage_service: UsageService, chat_service: ChatService):
        self.client = email_client
        self.db = database
        self.usage = usage_service
        self.chat = chat_service

    async def send_email(
        self,
        user: AuthenticatedUser,
        recipient_email: str,
        subject: str,
        content: Optional[str] = None,
        email_type: Optional[str] = None,
        topic: Optional[str] = None,
        from_email: Optional[str] = None
    ) -> Dict[str, Any]:
        """Send a custom or AI-written email on the user's behalf"""
        require_text("recipient_email and subject are required", recipient_email=recipient_email, subject=subject)
        for name, value in (('content', content), ('type', email_type), ('topic', topic), ('from_email', from_email)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string")

        from_email = from_email or self.client.default_from
        generate = email_type == AI_GENERATED and bool(topic)
        if not generate and not content:
            raise ValidationError("content is required unless type is ai_generated with a topic")

        self.usage.check(user.id, ActionType.EMAIL)

        if generate:
            content = await self.chat.write_email(recipient_email, subject, topic, from_email)
            if not content:
                raise UpstreamError("Empty completion for email body", "Failed to generate email content")

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: self.client.send(recipient_email, subject, content, from_email=from_email)
        )
        status = 'sent' if result.sent else 'failed'

        record = self.db.insert_email({
            'user_id': user.id,
            'recipient_email': recipient_email,
            'subject': subject,
            'content': content,
            'type': email_type or 'custom',
            'topic': topic,
            'status': status,
            'from_email': from_email,
            'sendgrid_message_id': result.message_id
        })

        if not result.sent:
            raise UpstreamError(f"SendGrid rejected email {record['id']}: {result.error}", "Failed to send email")

        self.usage.increment(user.id, ActionType.EMAIL)

        response = {
            'success': True,
            'status': status,
            'email_id': record['id']
        }
        if generate:
            response['generated_content'] = content
        return response
