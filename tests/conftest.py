import pytest
from unittest.mock import MagicMock
from types import SimpleNamespace
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.routes import Services, create_app
from api.services.calls import CallService
from api.services.chat import ChatService
from api.services.email import EmailService
from api.services.sms import SMSService
from api.services.subscription import SubscriptionReconciler, SubscriptionService
from api.services.text_chat import TextChatService
from api.services.usage import UsageService
from lib.auth import SupabaseAuth
from lib.config import Settings
from lib.email_client import SendResult
from lib.error_handler import InternalError
from lib.models import UsagePeriod, User
from lib.plans import PlanCatalog

TEST_USER_ID = 'user-1'
VALID_TOKEN = 'valid-token'

TEST_PRICES = {
    'pro': {'monthly': 'price_pro_monthly', 'yearly': 'price_pro_yearly'},
    'premium': {'monthly': 'price_premium_monthly', 'yearly': 'price_premium_yearly'},
}

class FakeDatabase:
    """In-memory stand-in for lib.database.Database"""

    def __init__(self):
        self.users = {}
        self.usage = {}
        self.usage_error = None
        self.subscriptions = {}
        self.subscription_events = []
        self.plan_changes = []
        self.calls = []
        self.emails = []
        self.sms_conversations = []
        self.sms_messages = []
        self.text_conversations = []
        self._ids = 0

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}-{self._ids}"

    def add_user(self, user_id: str = TEST_USER_ID, **fields) -> dict:
        row = {'id': user_id, 'subscription_tier': 'free', **fields}
        self.users[user_id] = row
        return row

    def set_usage(self, user_id: str = TEST_USER_ID, calls: int = 0, texts: int = 0, emails: int = 0) -> None:
        self.usage[user_id] = {'calls': calls, 'texts': texts, 'emails': emails}

    # Usage ledger

    def get_current_month_usage(self, user_id):
        if self.usage_error:
            raise InternalError(self.usage_error)
        counts = self.usage.get(user_id, {})
        tier = self.users.get(user_id, {}).get('subscription_tier') or 'free'
        return UsagePeriod(
            calls_used=counts.get('calls', 0),
            texts_used=counts.get('texts', 0),
            emails_used=counts.get('emails', 0),
            tier=tier
        )

    def increment_usage(self, user_id, action):
        counts = self.usage.setdefault(user_id, {'calls': 0, 'texts': 0, 'emails': 0})
        counts[action.usage_type] = counts.get(action.usage_type, 0) + 1

    # Users

    def get_user(self, user_id):
        row = self.users.get(user_id)
        return User.from_row(row) if row else None

    def get_user_by_customer_id(self, customer_id):
        for row in self.users.values():
            if row.get('stripe_customer_id') == customer_id:
                return User.from_row(row)
        return None

    def update_user(self, user_id, fields):
        self.users[user_id].update(fields)

    # Billing records

    def upsert_subscription(self, row):
        existing = self.subscriptions.get(row['stripe_subscription_id'], {})
        self.subscriptions[row['stripe_subscription_id']] = {**existing, **row}

    def update_subscriptions(self, fields, **match):
        for row in self.subscriptions.values():
            if all(row.get(column) == value for column, value in match.items()):
                row.update(fields)

    def insert_subscription_event(self, row):
        self.subscription_events.append(row)

    def insert_plan_change(self, row):
        self.plan_changes.append(dict(row))

    def cancel_pending_plan_changes(self, user_id, notes):
        for row in self.plan_changes:
            if row['user_id'] == user_id and row['status'] == 'pending':
                row.update({'status': 'cancelled', 'notes': notes})

    # Action records

    def insert_call(self, row):
        record = {'id': self._next_id('call'), **row}
        self.calls.append(record)
        return record

    def get_call_by_sid(self, call_sid):
        return next((c for c in self.calls if c.get('twilio_call_sid') == call_sid), None)

    def update_call_by_sid(self, call_sid, fields):
        updated = []
        for call in self.calls:
            if call.get('twilio_call_sid') == call_sid:
                call.update(fields)
                updated.append(call)
        return updated

    def insert_email(self, row):
        record = {'id': self._next_id('email'), **row}
        self.emails.append(record)
        return record

    def insert_sms_conversation(self, row):
        record = {'id': self._next_id('conv'), **row}
        self.sms_conversations.append(record)
        return record

    def update_sms_conversation(self, conversation_id, fields):
        for conversation in self.sms_conversations:
            if conversation['id'] == conversation_id:
                conversation.update(fields)

    def get_active_conversation(self, phone_number):
        active = [
            c for c in self.sms_conversations
            if c['phone_number'] == phone_number and c['status'] == 'active'
        ]
        return dict(active[-1]) if active else None

    def insert_sms_message(self, row):
        self.sms_messages.append(dict(row))

    def get_conversation_messages(self, conversation_id):
        return [
            {'direction': m['direction'], 'message_text': m['message_text']}
            for m in self.sms_messages
            if m.get('conversation_id') == conversation_id
        ]

    def insert_text_conversation(self, row):
        record = {'id': self._next_id('chat'), **row}
        self.text_conversations.append(record)
        return dict(record)

    def get_text_conversation(self, conversation_id, user_id):
        for conversation in self.text_conversations:
            if conversation['id'] == conversation_id and conversation['user_id'] == user_id:
                return dict(conversation)
        return None

    def update_text_conversation(self, conversation_id, fields):
        for conversation in self.text_conversations:
            if conversation['id'] == conversation_id:
                conversation.update(fields)

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        functions_base_url='https://functions.test/',
        websocket_service_url='wss://stream.test',
        stripe_secret_key='sk_test',
        stripe_webhook_secret='whsec_test',
        stripe_price_pro_monthly='price_pro_monthly',
        stripe_price_pro_yearly='price_pro_yearly',
        stripe_price_premium_monthly='price_premium_monthly',
        stripe_price_premium_yearly='price_premium_yearly',
        twilio_validate_signatures=False
    )

@pytest.fixture
def catalog():
    return PlanCatalog(prices=TEST_PRICES)

@pytest.fixture
def fake_db():
    db = FakeDatabase()
    db.add_user(email='user@example.com')
    return db

@pytest.fixture
def usage_service(fake_db, catalog):
    return UsageService(fake_db, catalog)

@pytest.fixture
def mock_twilio():
    client = MagicMock()
    client.phone_number = '+15550001111'
    client.send_message.side_effect = lambda to, body: f"SM{len(client.send_message.call_args_list)}"
    client.create_call.return_value = 'CA123'
    client.is_valid_request.return_value = True
    return client

@pytest.fixture
def mock_openai():
    client = MagicMock()
    client.complete.return_value = "What do you enjoy most about it?"
    return client

@pytest.fixture
def chat_service(mock_openai):
    return ChatService(mock_openai)

@pytest.fixture
def mock_sendgrid():
    client = MagicMock()
    client.default_from = 'hello@talkah.com'
    client.send.return_value = SendResult(sent=True, message_id='sg-1')
    return client

@pytest.fixture
def mock_stripe():
    return MagicMock()

@pytest.fixture
def sms_service(mock_twilio, fake_db, usage_service, chat_service):
    return SMSService(mock_twilio, fake_db, usage_service, chat_service)

@pytest.fixture
def call_service(mock_twilio, fake_db, usage_service, settings):
    return CallService(mock_twilio, fake_db, usage_service, settings)

@pytest.fixture
def email_service(mock_sendgrid, fake_db, usage_service, chat_service):
    return EmailService(mock_sendgrid, fake_db, usage_service, chat_service)

@pytest.fixture
def text_chat_service(fake_db, usage_service, chat_service):
    return TextChatService(fake_db, usage_service, chat_service)

@pytest.fixture
def reconciler(fake_db, mock_stripe, catalog):
    return SubscriptionReconciler(fake_db, mock_stripe, catalog)

@pytest.fixture
def subscription_service(fake_db, mock_stripe, catalog):
    return SubscriptionService(fake_db, mock_stripe, catalog)

@pytest.fixture
def auth():
    def get_user(token):
        if token != VALID_TOKEN:
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=TEST_USER_ID, email='user@example.com'))

    supabase = MagicMock()
    supabase.auth.get_user.side_effect = get_user
    return SupabaseAuth(supabase)

@pytest.fixture
def services(settings, auth, usage_service, call_service, sms_service, email_service,
             text_chat_service, reconciler, subscription_service, mock_stripe, mock_twilio):
    return Services(
        settings=settings,
        auth=auth,
        usage=usage_service,
        calls=call_service,
        sms=sms_service,
        email=email_service,
        text_chat=text_chat_service,
        reconciler=reconciler,
        subscriptions=subscription_service,
        stripe_client=mock_stripe,
        twilio_client=mock_twilio
    )

@pytest.fixture
def test_client(services):
    app = create_app(services)
    app.config['TESTING'] = True
    return app.test_client()

@pytest.fixture
def auth_headers():
    return {'Authorization': f"Bearer {VALID_TOKEN}"}
