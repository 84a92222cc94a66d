import pytest

from api.services.sms import CLOSING_MESSAGE, fallback_opening
from lib.error_handler import LimitReachedError, UpstreamError, ValidationError
from lib.models import AuthenticatedUser

USER = AuthenticatedUser(id='user-1')
PHONE = '+15551234567'
EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response />'

async def test_start_conversation_sends_opening(fake_db, sms_service, mock_twilio, mock_openai):
    mock_openai.complete.return_value = "Hi! Ready to talk about volcanoes?"

    result = await sms_service.start_conversation(USER, PHONE, 'volcanoes', 3)

    assert result['success']
    assert result['first_message'] == "Hi! Ready to talk about volcanoes?"
    assert 'warning' not in result
    mock_twilio.send_message.assert_called_once_with(PHONE, "Hi! Ready to talk about volcanoes?")

    conversation = fake_db.sms_conversations[0]
    assert conversation['status'] == 'active'
    assert conversation['current_exchange'] == 0
    assert fake_db.sms_messages[0]['direction'] == 'outbound'
    assert fake_db.usage['user-1']['texts'] == 1

async def test_start_conversation_falls_back_when_ai_fails(sms_service, mock_openai):
    mock_openai.complete.side_effect = UpstreamError("rate limited")

    result = await sms_service.start_conversation(USER, PHONE, 'volcanoes', 3)

    assert result['first_message'] == fallback_opening('volcanoes')
    assert result['warning']

async def test_start_conversation_send_failure_marks_failed(fake_db, sms_service, mock_twilio):
    mock_twilio.send_message.side_effect = UpstreamError("unverified", "This phone number is not verified with our test account.")

    with pytest.raises(UpstreamError):
        await sms_service.start_conversation(USER, PHONE, 'volcanoes', 3)

    assert fake_db.sms_conversations[0]['status'] == 'failed'
    assert 'user-1' not in fake_db.usage

@pytest.mark.parametrize('message_count', [0, -2, 'many', None, True, False])
async def test_start_conversation_rejects_bad_count(sms_service, message_count):
    with pytest.raises(ValidationError):
        await sms_service.start_conversation(USER, PHONE, 'volcanoes', message_count)

async def test_start_conversation_over_limit(fake_db, sms_service, mock_twilio):
    fake_db.set_usage(texts=1)

    with pytest.raises(LimitReachedError):
        await sms_service.start_conversation(USER, PHONE, 'volcanoes', 3)

    mock_twilio.send_message.assert_not_called()
    assert fake_db.sms_conversations == []

async def test_two_exchange_conversation_completes(fake_db, sms_service, mock_twilio, mock_openai):
    await sms_service.start_conversation(USER, PHONE, 'volcanoes', 2)
    mock_openai.complete.reset_mock()
    mock_openai.complete.return_value = "Have you seen one erupt?"

    twiml = await sms_service.handle_incoming(PHONE, "I love them", 'SMin1')

    assert twiml == EMPTY_TWIML
    assert mock_openai.complete.call_count == 1
    assert fake_db.sms_conversations[0]['current_exchange'] == 1
    assert fake_db.sms_conversations[0]['status'] == 'active'

    await sms_service.handle_incoming(PHONE, "Not yet!", 'SMin2')

    conversation = fake_db.sms_conversations[0]
    assert conversation['status'] == 'completed'
    assert conversation['current_exchange'] == 2
    assert mock_openai.complete.call_count == 1
    assert mock_twilio.send_message.call_args[0] == (PHONE, CLOSING_MESSAGE)
    assert fake_db.sms_messages[-1]['message_text'] == CLOSING_MESSAGE

async def test_reply_includes_history(fake_db, sms_service, mock_openai):
    mock_openai.complete.return_value = "Opening"
    await sms_service.start_conversation(USER, PHONE, 'tea', 4)
    mock_openai.complete.return_value = "Green or black?"

    await sms_service.handle_incoming(PHONE, "I drink a lot of tea", 'SMin1')

    messages = mock_openai.complete.call_args[0][0]
    assert messages[0]['role'] == 'system'
    assert 'exchange 1 of 4' in messages[0]['content']
    assert messages[1:] == [
        {'role': 'assistant', 'content': 'Opening'},
        {'role': 'user', 'content': 'I drink a lot of tea'}
    ]

async def test_incoming_without_conversation_is_standalone(fake_db, sms_service, mock_twilio):
    twiml = await sms_service.handle_incoming(PHONE, "hello?", 'SMin1')

    assert twiml == EMPTY_TWIML
    assert fake_db.sms_messages[0]['type'] == 'standalone'
    mock_twilio.send_message.assert_not_called()

async def test_send_single(fake_db, sms_service, mock_twilio):
    result = await sms_service.send_single(USER, PHONE, "Reminder: call mom")

    assert result['success']
    assert fake_db.sms_messages[0]['type'] == 'single'
    assert fake_db.usage['user-1']['texts'] == 1

@pytest.mark.parametrize('phone,topic', [(15551234567, 'volcanoes'), (PHONE, {'name': 'volcanoes'})])
async def test_start_conversation_rejects_non_string_fields(fake_db, sms_service, mock_twilio, phone, topic):
    with pytest.raises(ValidationError):
        await sms_service.start_conversation(USER, phone, topic, 3)

    mock_twilio.send_message.assert_not_called()
    assert fake_db.sms_conversations == []

@pytest.mark.parametrize('phone,text', [(15551234567, "Reminder"), (PHONE, 12345), (PHONE, None)])
async def test_send_single_rejects_bad_fields(fake_db, sms_service, mock_twilio, phone, text):
    with pytest.raises(ValidationError):
        await sms_service.send_single(USER, phone, text)

    mock_twilio.send_message.assert_not_called()
    assert fake_db.sms_messages == []
