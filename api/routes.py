from flask import Flask, request, Response, jsonify
from werkzeug.exceptions import HTTPException
import logging
import stripe

from api.services.calls import CallService, hangup_twiml
from api.services.chat import ChatService
from api.services.email import EmailService
from api.services.sms import SMSService, empty_twiml
from api.services.subscription import SubscriptionReconciler, SubscriptionService
from api.services.text_chat import TextChatService
from api.services.usage import UsageService
from lib.auth import SupabaseAuth
from lib.config import Settings
from lib.database import Database
from lib.email_client import SendGridClient
from lib.error_handler import AppError, ErrorHandler, ValidationError
from lib.openai_client import OpenAIClient
from lib.stripe_client import StripeClient
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

CORS_ALLOW_HEADERS = 'authorization, x-client-info, apikey, content-type'
CORS_ALLOW_METHODS = 'GET, POST, OPTIONS'

class Services:
    """Everything a request handler needs, built once per process"""

    def __init__(
        self,
        settings: Settings,
        auth: SupabaseAuth,
        usage: UsageService,
        calls: CallService,
        sms: SMSService,
        email: EmailService,
        text_chat: TextChatService,
        reconciler: SubscriptionReconciler,
        subscriptions: SubscriptionService,
        stripe_client: StripeClient,
        twilio_client: TwilioClient
    ):
        self.settings = settings
        self.auth = auth
        self.usage = usage
        self.calls = calls
        self.sms = sms
        self.email = email
        self.text_chat = text_chat
        self.reconciler = reconciler
        self.subscriptions = subscriptions
        self.stripe = stripe_client
        self.twilio = twilio_client

def build_services(settings: Settings) -> Services:
    logger.info("Initializing clients...")
    database = Database.from_settings(settings)
    twilio_client = TwilioClient(settings)
    stripe_client = StripeClient(settings)
    chat_service = ChatService(OpenAIClient(settings))
    catalog = settings.plan_catalog()
    usage_service = UsageService(database, catalog)
    logger.info("Clients initialized successfully")

    return Services(
        settings=settings,
        auth=SupabaseAuth(database.supabase),
        usage=usage_service,
        calls=CallService(twilio_client, database, usage_service, settings),
        sms=SMSService(twilio_client, database, usage_service, chat_service),
        email=EmailService(SendGridClient(settings), database, usage_service, chat_service),
        text_chat=TextChatService(database, usage_service, chat_service),
        reconciler=SubscriptionReconciler(database, stripe_client, catalog),
        subscriptions=SubscriptionService(database, stripe_client, catalog),
        stripe_client=stripe_client,
        twilio_client=twilio_client
    )

def twiml_response(twiml: str, status: int = 200) -> Response:
    return Response(twiml, status=status, mimetype='text/xml')

def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    settings = services.settings

    def current_user():
        return services.auth.authenticate(request.headers.get('Authorization'))

    def json_body():
        body = request.get_json(silent=True)
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    def twilio_request_rejected() -> bool:
        if not settings.twilio_validate_signatures:
            return False
        valid = services.twilio.is_valid_request(
            request.url,
            request.form.to_dict(),
            request.headers.get('X-Twilio-Signature')
        )
        if not valid:
            logger.warning(f"Rejected unsigned Twilio request to {request.path}")
        return not valid

    @app.before_request
    def preflight():
        if request.method == 'OPTIONS':
            return Response('ok', status=200)

    @app.after_request
    def add_cors_headers(response: Response) -> Response:
        response.headers['Access-Control-Allow-Origin'] = settings.cors_allow_origin
        response.headers['Access-Control-Allow-Headers'] = CORS_ALLOW_HEADERS
        response.headers['Access-Control-Allow-Methods'] = CORS_ALLOW_METHODS
        return response

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        return jsonify(ErrorHandler.handle_app_error(error)), error.status_code

    @app.errorhandler(Exception)
    def handle_exception(error: Exception):
        if isinstance(error, HTTPException):
            return error
        return jsonify(ErrorHandler.handle_unexpected_error(error)), 500

    @app.route('/', methods=['GET'])
    def root():
        """Basic health check"""
        return {'status': 'healthy'}

    # Authenticated actions

    @app.route('/initiate-call', methods=['POST'])
    async def initiate_call():
        user = current_user()
        data = json_body()
        result = await services.calls.initiate_call(user, data.get('user_phone_number'), data.get('topic'))
        return jsonify(result)

    @app.route('/initiate-sms-conversation', methods=['POST'])
    async def initiate_sms_conversation():
        user = current_user()
        data = json_body()
        result = await services.sms.start_conversation(
            user,
            data.get('phone_number'),
            data.get('topic'),
            data.get('message_count')
        )
        return jsonify(result)

    @app.route('/send-single-sms', methods=['POST'])
    async def send_single_sms():
        user = current_user()
        data = json_body()
        result = await services.sms.send_single(user, data.get('phone_number'), data.get('message_text'))
        return jsonify(result)

    @app.route('/send-email', methods=['POST'])
    async def send_email():
        user = current_user()
        data = json_body()
        result = await services.email.send_email(
            user,
            recipient_email=data.get('recipient_email'),
            subject=data.get('subject'),
            content=data.get('content'),
            email_type=data.get('type'),
            topic=data.get('topic'),
            from_email=data.get('from_email')
        )
        return jsonify(result)

    @app.route('/initiate-text-chat', methods=['POST'])
    def initiate_text_chat():
        user = current_user()
        data = json_body()
        return jsonify(services.text_chat.start_text_chat(user, data.get('topic')))

    @app.route('/send-text-message', methods=['POST'])
    async def send_text_message():
        user = current_user()
        data = json_body()
        result = await services.text_chat.send_text_message(
            user,
            data.get('conversation_id'),
            data.get('message')
        )
        return jsonify(result)

    @app.route('/get-user-usage', methods=['GET', 'POST'])
    def get_user_usage():
        user = current_user()
        return jsonify(services.usage.summary(user.id))

    @app.route('/get-subscription-status', methods=['GET', 'POST'])
    def get_subscription_status():
        user = current_user()
        return jsonify(services.subscriptions.get_status(user.id))

    @app.route('/update-subscription-plan', methods=['POST'])
    async def update_subscription_plan():
        user = current_user()
        data = json_body()
        result = await services.subscriptions.request_plan_change(
            user,
            data.get('planId'),
            bool(data.get('isYearly')),
            data.get('changeType')
        )
        return jsonify(result)

    # Provider webhooks

    @app.route('/stripe-webhook', methods=['POST'])
    async def stripe_webhook():
        payload = request.get_data()
        try:
            event = services.stripe.verify_event(payload, request.headers.get('Stripe-Signature'))
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Rejected Stripe webhook: {str(e)}")
            return jsonify({'success': False, 'error': 'Invalid signature'}), 400

        try:
            await services.reconciler.process_event(event)
        except Exception as e:
            ErrorHandler.handle_webhook_error(e)
        return jsonify({'received': True})

    @app.route('/twilio-sms-webhook', methods=['POST'])
    async def twilio_sms_webhook():
        if twilio_request_rejected():
            return Response('Forbidden', status=403)

        form = request.form
        try:
            twiml = await services.sms.handle_incoming(form.get('From'), form.get('Body'), form.get('MessageSid'))
        except Exception as e:
            ErrorHandler.handle_webhook_error(e)
            twiml = empty_twiml()
        return twiml_response(twiml)

    @app.route('/twilio-status-callback', methods=['POST'])
    def twilio_status_callback():
        if twilio_request_rejected():
            return Response('Forbidden', status=403)

        form = request.form
        try:
            services.calls.handle_status_callback(form.get('CallSid'), form.get('CallStatus'), form.get('CallDuration'))
        except ValidationError:
            raise
        except Exception as e:
            ErrorHandler.handle_webhook_error(e)
        return Response('OK', status=200, mimetype='text/plain')

    @app.route('/amd-callback', methods=['POST'])
    async def amd_callback():
        if twilio_request_rejected():
            return Response('Forbidden', status=403)

        form = request.form
        try:
            await services.calls.handle_amd(form.get('CallSid'), form.get('AnsweredBy'))
        except Exception as e:
            logger.error(f"Error in AMD callback: {str(e)}", exc_info=True)
            return Response('Internal Server Error', status=500, mimetype='text/plain')
        return Response('OK', status=200, mimetype='text/plain')

    @app.route('/twilio-voice-connect-stream', methods=['GET', 'POST'])
    def twilio_voice_connect_stream():
        if twilio_request_rejected():
            return Response('Forbidden', status=403)

        call_sid = request.args.get('CallSid') or request.form.get('CallSid')
        if not call_sid:
            raise ValidationError("CallSid is required")
        try:
            return twiml_response(services.calls.voice_connect(call_sid))
        except Exception as e:
            logger.error(f"Error connecting call {call_sid}: {str(e)}", exc_info=True)
            return twiml_response(hangup_twiml("An internal server error occurred."), status=500)

    return app
