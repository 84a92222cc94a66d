import logging
from typing import Dict, Any, List

from api.services.chat import ChatService
from api.services.usage import UsageService
from lib.database import Database, utcnow_iso
from lib.error_handler import NotFoundError, UpstreamError, require_text
from lib.models import ActionType, AuthenticatedUser

logger = logging.getLogger(__name__)

class TextChatService:
    """In-app AI chat. Opening a conversation counts against the texts allowance."""

    def __init__(self, database: Database, usage_service: UsageService, chat_service: ChatService):
        self.db = database
        self.usage = usage_service
        self.chat = chat_service

    def start_text_chat(self, user: AuthenticatedUser, topic: str) -> Dict[str, Any]:
        require_text("Topic is required", topic=topic)

        self.usage.check(user.id, ActionType.TEXT)

        conversation = self.db.insert_text_conversation({
            'user_id': user.id,
            'topic': topic,
            'conversation_history': []
        })
        self.usage.increment(user.id, ActionType.TEXT)
        logger.info(f"Created text conversation {conversation['id']} for {user.id}")

        return {
            'success': True,
            'conversation_id': conversation['id'],
            'topic': conversation['topic']
        }

    async def send_text_message(self, user: AuthenticatedUser, conversation_id: str, message: str) -> Dict[str, Any]:
        """Append the user's turn and the assistant's reply to the stored history"""
        require_text(
            "conversation_id and message are required",
            conversation_id=conversation_id,
            message=message
        )

        conversation = self.db.get_text_conversation(conversation_id, user.id)
        if not conversation:
            raise NotFoundError("Conversation not found")

        history: List[Dict[str, str]] = list(conversation.get('conversation_history') or [])
        history.append({'role': 'user', 'content': message, 'timestamp': utcnow_iso()})

        reply = await self.chat.converse(conversation['topic'], history)
        if not reply:
            raise UpstreamError("Empty completion for text chat", "Failed to generate AI response")

        history.append({'role': 'assistant', 'content': reply, 'timestamp': utcnow_iso()})
        self.db.update_text_conversation(conversation_id, {'conversation_history': history})

        return {
            'success': True,
            'ai_response': reply,
            'conversation_history': history
        }
