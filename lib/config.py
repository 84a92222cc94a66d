from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

from lib.plans import PlanCatalog, DEFAULT_PLAN_LIMITS

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # Supabase settings
    supabase_url: str = ''
    supabase_service_role_key: str = ''

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_phone_number: str = ''
    twilio_messaging_service_sid: str = ''
    twilio_validate_signatures: bool = False

    # OpenAI settings
    openai_api_key: str = ''
    openai_model: str = 'gpt-4o'

    # SendGrid settings
    sendgrid_api_key: str = ''
    sendgrid_from_email: str = 'hello@talkah.com'

    # Stripe settings
    stripe_secret_key: str = ''
    stripe_webhook_secret: str = ''
    stripe_price_pro_monthly: str = 'price_1RYAcH04AHhaKcz1zSaXyJHS'
    stripe_price_pro_yearly: str = 'price_1RYAcj04AHhaKcz1jZEqaw58'
    stripe_price_premium_monthly: str = 'price_1RYAd904AHhaKcz1sfdexopq'
    stripe_price_premium_yearly: str = 'price_1RYAdU04AHhaKcz1ZXsoCLdh'

    # Public URLs Twilio calls back into
    functions_base_url: str = 'http://localhost:8000/'
    websocket_service_url: str = 'wss://localhost:8080'

    cors_allow_origin: str = '*'

    def callback_url(self, path: str) -> str:
        """Absolute URL of one of our own handlers"""
        return f"{self.functions_base_url.rstrip('/')}/{path.lstrip('/')}"

    def plan_catalog(self) -> PlanCatalog:
        return PlanCatalog(
            limits=dict(DEFAULT_PLAN_LIMITS),
            prices={
                'pro': {
                    'monthly': self.stripe_price_pro_monthly,
                    'yearly': self.stripe_price_pro_yearly,
                },
                'premium': {
                    'monthly': self.stripe_price_premium_monthly,
                    'yearly': self.stripe_price_premium_yearly,
                },
            },
        )

def get_settings() -> Settings:
    return Settings()
