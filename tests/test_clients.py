import json
import time
import pytest
from unittest.mock import MagicMock, patch
from types import SimpleNamespace

import stripe
from openai import OpenAIError
from twilio.base.exceptions import TwilioRestException

from lib.auth import SupabaseAuth
from lib.error_handler import AuthError, UpstreamError
from lib.openai_client import OpenAIClient
from lib.stripe_client import StripeClient
from lib.twilio_client import TwilioClient

# Settings

def test_callback_url_joins_paths(settings):
    assert settings.callback_url('/amd-callback') == 'https://functions.test/amd-callback'

def test_plan_catalog_from_settings(settings):
    catalog = settings.plan_catalog()
    assert catalog.plan_for_price('price_pro_yearly') == 'pro'
    assert catalog.limits_for('pro').texts == 10

# Auth

def test_auth_strips_bearer_prefix(auth):
    user = auth.authenticate('Bearer valid-token')
    assert user.id == 'user-1'
    auth.supabase.auth.get_user.assert_called_once_with('valid-token')

@pytest.mark.parametrize('header', ['bearer valid-token', 'BEARER valid-token', '  Bearer   valid-token '])
def test_auth_bearer_scheme_is_case_insensitive(auth, header):
    assert auth.authenticate(header).id == 'user-1'
    auth.supabase.auth.get_user.assert_called_once_with('valid-token')

def test_auth_rejects_missing_user():
    supabase = MagicMock()
    supabase.auth.get_user.return_value = SimpleNamespace(user=None)

    with pytest.raises(AuthError):
        SupabaseAuth(supabase).authenticate('Bearer token')

# Twilio

@pytest.fixture
def twilio_sdk():
    return MagicMock()

def test_send_message_prefers_messaging_service(settings, twilio_sdk):
    settings.twilio_messaging_service_sid = 'MG1'
    twilio_sdk.messages.create.return_value = SimpleNamespace(sid='SM42')

    sid = TwilioClient(settings, client=twilio_sdk).send_message('+1555', 'hi')

    assert sid == 'SM42'
    assert twilio_sdk.messages.create.call_args[1]['messaging_service_sid'] == 'MG1'

def test_send_message_maps_unverified_number(settings, twilio_sdk):
    twilio_sdk.messages.create.side_effect = TwilioRestException(400, '/Messages', msg='unverified', code=21608)

    with pytest.raises(UpstreamError) as exc_info:
        TwilioClient(settings, client=twilio_sdk).send_message('+1555', 'hi')

    assert exc_info.value.user_message == "This phone number is not verified with our test account."

def test_create_call_enables_amd(settings, twilio_sdk):
    settings.twilio_phone_number = '+15550001111'
    twilio_sdk.calls.create.return_value = SimpleNamespace(sid='CA9')

    sid = TwilioClient(settings, client=twilio_sdk).create_call(
        '+1555', 'https://x/twiml', status_callback='https://x/status', amd_callback='https://x/amd'
    )

    kwargs = twilio_sdk.calls.create.call_args[1]
    assert sid == 'CA9'
    assert kwargs['from_'] == '+15550001111'
    assert kwargs['method'] == 'GET'
    assert kwargs['machine_detection'] == 'Enable'
    assert kwargs['async_amd_status_callback'] == 'https://x/amd'

def test_unsigned_request_is_invalid(settings, twilio_sdk):
    assert not TwilioClient(settings, client=twilio_sdk).is_valid_request('https://x', {}, None)

# OpenAI

def test_complete_strips_content(settings):
    sdk = MagicMock()
    sdk.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="  Hello!  "))]
    )

    assert OpenAIClient(settings, client=sdk).complete([{'role': 'user', 'content': 'hi'}]) == "Hello!"
    assert sdk.chat.completions.create.call_args[1]['model'] == settings.openai_model

def test_complete_wraps_api_errors(settings):
    sdk = MagicMock()
    sdk.chat.completions.create.side_effect = OpenAIError("quota exceeded")

    with pytest.raises(UpstreamError):
        OpenAIClient(settings, client=sdk).complete([])

# Stripe

def signed_header(payload: str, secret: str) -> str:
    timestamp = int(time.time())
    signature = stripe.WebhookSignature._compute_signature(f"{timestamp}.{payload}", secret)
    return f"t={timestamp},v1={signature}"

def test_verify_event_accepts_valid_signature(settings):
    payload = json.dumps({'id': 'evt_1', 'type': 'customer.subscription.created'})

    event = StripeClient(settings).verify_event(payload.encode(), signed_header(payload, 'whsec_test'))

    assert event['id'] == 'evt_1'

def test_verify_event_rejects_wrong_secret(settings):
    payload = json.dumps({'id': 'evt_1'})

    with pytest.raises(stripe.SignatureVerificationError):
        StripeClient(settings).verify_event(payload.encode(), signed_header(payload, 'whsec_other'))

def test_verify_event_requires_header(settings):
    with pytest.raises(ValueError):
        StripeClient(settings).verify_event(b'{}', None)

def test_change_price_prorates_first_item(settings):
    subscription = MagicMock()
    subscription.to_dict.return_value = {'id': 'sub_1', 'items': {'data': [{'id': 'si_1'}]}}

    with patch('stripe.Subscription.retrieve', return_value=subscription), \
         patch('stripe.Subscription.modify') as modify:
        StripeClient(settings).change_price('sub_1', 'price_premium_monthly')

    kwargs = modify.call_args[1]
    assert kwargs['items'] == [{'id': 'si_1', 'price': 'price_premium_monthly'}]
    assert kwargs['proration_behavior'] == 'create_prorations'
    assert kwargs['cancel_at_period_end'] is False

def test_stripe_errors_become_upstream(settings):
    with patch('stripe.Subscription.modify', side_effect=stripe.InvalidRequestError("No such subscription", 'id')):
        with pytest.raises(UpstreamError):
            StripeClient(settings).schedule_cancellation('sub_missing')
