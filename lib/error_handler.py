from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {'success': False, 'error': self.user_message}

class ValidationError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=400, user_message=message)

def require_text(missing_message: str, **fields: Any) -> None:
    """Raise ValidationError unless every field is a non-empty string"""
    for name, value in fields.items():
        if value is None or value == '':
            raise ValidationError(missing_message)
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")

class AuthError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status_code=401, user_message=message)

class LimitReachedError(AppError):
    def __init__(self, action: str, used: int, limit: int, tier: str):
        self.action = action
        self.used = used
        self.limit = limit
        self.tier = tier
        super().__init__(
            f"Usage limit reached for {action}: {used}/{limit} on {tier} plan",
            status_code=403,
            user_message=f"{LIMIT_LABELS.get(action, action)} limit reached"
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['usage_limit_reached'] = True
        return body

class NotFoundError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=404, user_message=message)

class UpstreamError(AppError):
    """An external API (Twilio, OpenAI, SendGrid, Stripe) failed"""
    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, status_code=500, user_message=user_message)

class InternalError(AppError):
    def __init__(self, message: str):
        super().__init__(message, status_code=500, user_message="Internal server error")

LIMIT_LABELS = {
    'call': 'Call',
    'text': 'SMS conversation',
    'email': 'Email',
}

class ErrorHandler:
    @staticmethod
    def handle_app_error(error: AppError) -> Dict[str, Any]:
        if error.status_code >= 500:
            logger.error(f"{type(error).__name__}: {error.message}")
        else:
            logger.info(f"Request rejected ({error.status_code}): {error.message}")
        return error.to_dict()

    @staticmethod
    def handle_unexpected_error(error: Exception) -> Dict[str, Any]:
        logger.error(f"Unexpected error: {str(error)}", exc_info=error)
        return {'success': False, 'error': "Internal server error"}

    @staticmethod
    def handle_webhook_error(error: Exception) -> None:
        # Webhooks are acknowledged regardless so the provider does not retry
        logger.error(f"Webhook processing error: {str(error)}", exc_info=error)
