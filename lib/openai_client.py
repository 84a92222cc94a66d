from openai import OpenAI, OpenAIError
from typing import Dict, List, Optional
import logging
from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)

class OpenAIClient:
    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.client = client or OpenAI(api_key=settings.openai_api_key)
        self.model = settings.openai_model

    def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 150,
        temperature: float = 0.7
    ) -> Optional[str]:
        """
        Run a chat completion and return the text of the first choice
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature
            )
        except OpenAIError as e:
            logger.error(f"OpenAI API error: {str(e)}")
            raise UpstreamError(f"Completion failed: {str(e)}")

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None
