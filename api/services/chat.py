import logging
import asyncio
from typing import List, Dict, Optional

from lib.openai_client import OpenAIClient

logger = logging.getLogger(__name__)

EMAIL_SYSTEM_PROMPT = (
    "You are an AI assistant that writes and sends real emails to the users of this app. "
    "Write natural, conversational emails that respond to the topic in a friendly, casual way. "
    "Don't overthink it - just write like you're having a normal conversation via email. "
    "No need to be overly formal or professional unless the topic specifically calls for it."
)

class ChatService:
    def __init__(self, openai_client: OpenAIClient):
        self.client = openai_client

    def _build_opening_prompt(self, topic: str, message_count: int) -> str:
        return (
            f"You are starting an SMS conversation about: {topic}. "
            f"This is the beginning of a {message_count}-exchange conversation. "
            "Send a friendly opening message that introduces the topic and asks an engaging question. "
            "Keep it conversational and under 160 characters."
        )

    def _build_reply_prompt(self, topic: str, exchange: int, message_count: int) -> str:
        return (
            f"You are continuing an SMS conversation about: {topic}. "
            f"This is exchange {exchange} of {message_count}. "
            "Keep responses conversational, engaging, and under 160 characters. "
            "Build on the conversation naturally."
        )

    def _build_chat_prompt(self, topic: str) -> str:
        return (
            f"You are having a conversation about: {topic}. "
            "Be helpful, engaging, and stay on topic. "
            "Keep responses conversational and not too long."
        )

    async def _complete(self, messages: List[Dict[str, str]], max_tokens: int, temperature: float) -> Optional[str]:
        """Run the OpenAI call in an executor"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: self.client.complete(messages, max_tokens=max_tokens, temperature=temperature)
        )

    async def opening_message(self, topic: str, message_count: int) -> Optional[str]:
        """First message of an SMS conversation, or None if nothing was generated"""
        messages = [
            {"role": "system", "content": self._build_opening_prompt(topic, message_count)},
            {"role": "user", "content": f"Start a conversation about {topic}."}
        ]
        return await self._complete(messages, max_tokens=150, temperature=0.7)

    async def reply(
        self,
        topic: str,
        history: List[Dict[str, str]],
        message: str,
        exchange: int,
        message_count: int
    ) -> Optional[str]:
        """Next assistant turn given the stored conversation history"""
        messages = [{"role": "system", "content": self._build_reply_prompt(topic, exchange, message_count)}]
        messages.extend(self._format_history(history))
        messages.append({"role": "user", "content": message})
        return await self._complete(messages, max_tokens=150, temperature=0.7)

    async def converse(self, topic: str, turns: List[Dict[str, str]]) -> Optional[str]:
        """Next assistant turn of an in-app chat; turns already carry chat roles"""
        messages = [{"role": "system", "content": self._build_chat_prompt(topic)}]
        messages.extend({"role": turn['role'], "content": turn['content']} for turn in turns)
        return await self._complete(messages, max_tokens=500, temperature=0.7)

    async def write_email(self, recipient: str, subject: str, topic: str, from_email: str) -> Optional[str]:
        prompt = (
            f'Write a complete email that will be sent to {recipient} with the subject "{subject}". '
            f"The email should be about: {topic}.\n\n"
            "Write this as a real email that will be sent immediately. Just respond naturally to the topic. "
            "Please don't make the email a \"template\" or something like that. Rather, make it an email "
            "that you are sending to someone. If you feel like signing the email, sign it as \"Talkah\".\n\n"
            f"The email will be sent from {from_email}."
        )
        messages = [
            {"role": "system", "content": EMAIL_SYSTEM_PROMPT},
            {"role": "user", "content": prompt}
        ]
        return await self._complete(messages, max_tokens=500, temperature=0.8)

    def _format_history(self, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """Map stored SMS rows onto chat roles"""
        return [
            {
                "role": "assistant" if row.get('direction') == 'outbound' else "user",
                "content": row.get('message_text', '')
            }
            for row in history
        ]
