import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from supabase import create_client, Client, ClientOptions

from lib.config import Settings
from lib.error_handler import AppError, InternalError
from lib.models import ActionType, UsagePeriod, User

logger = logging.getLogger(__name__)

USER_COLUMNS = (
    'id, email, subscription_tier, subscription_status, billing_cycle_start, '
    'billing_cycle_end, billing_interval, stripe_customer_id, stripe_subscription_id, '
    'pending_plan_id, plan_change_effective_date, plan_change_type'
)

def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

class Database:
    """Thin wrapper over the Supabase tables and RPCs the handlers touch"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    @classmethod
    def from_settings(cls, settings: Settings) -> 'Database':
        # Service-role client; sessions are never persisted server side
        client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
            options=ClientOptions(auto_refresh_token=False, persist_session=False)
        )
        return cls(client)

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except AppError:
            raise
        except Exception as e:
            raise InternalError(f"Database error while {action}: {str(e)}")

    # Usage ledger

    def get_current_month_usage(self, user_id: str) -> UsagePeriod:
        """Counts of calls/texts/emails consumed this period plus the user's tier"""
        result = self._execute(
            self.supabase.rpc('get_current_month_usage', {'user_uuid': user_id}),
            f"reading usage for {user_id}"
        )
        rows = result.data or []
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return UsagePeriod()
        row = rows[0]
        return UsagePeriod(
            calls_used=row.get('calls_used') or 0,
            texts_used=row.get('texts_used') or 0,
            emails_used=row.get('emails_used') or 0,
            tier=row.get('tier') or 'free',
        )

    def increment_usage(self, user_id: str, action: ActionType) -> None:
        self._execute(
            self.supabase.rpc('increment_usage', {
                'user_uuid': user_id,
                'usage_type': action.usage_type
            }),
            f"incrementing {action.usage_type} for {user_id}"
        )

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        result = self._execute(
            self.supabase.table('users').select(USER_COLUMNS).eq('id', user_id).limit(1),
            f"fetching user {user_id}"
        )
        return User.from_row(result.data[0]) if result.data else None

    def get_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        result = self._execute(
            self.supabase.table('users').select(USER_COLUMNS)
                .eq('stripe_customer_id', customer_id).limit(1),
            f"fetching user for customer {customer_id}"
        )
        return User.from_row(result.data[0]) if result.data else None

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        fields = {**fields, 'updated_at': utcnow_iso()}
        self._execute(
            self.supabase.table('users').update(fields).eq('id', user_id),
            f"updating user {user_id}"
        )

    # Billing records

    def upsert_subscription(self, row: Dict[str, Any]) -> None:
        row = {**row, 'updated_at': utcnow_iso()}
        self._execute(
            self.supabase.table('subscriptions').upsert(row, on_conflict='stripe_subscription_id'),
            f"upserting subscription {row.get('stripe_subscription_id')}"
        )

    def update_subscriptions(self, fields: Dict[str, Any], **match: str) -> None:
        query = self.supabase.table('subscriptions').update({**fields, 'updated_at': utcnow_iso()})
        for column, value in match.items():
            query = query.eq(column, value)
        self._execute(query, f"updating subscriptions matching {match}")

    def insert_subscription_event(self, row: Dict[str, Any]) -> None:
        self._execute(
            self.supabase.table('subscription_events').insert(row),
            f"recording {row.get('event_type')} event for {row.get('user_id')}"
        )

    def insert_plan_change(self, row: Dict[str, Any]) -> None:
        self._execute(
            self.supabase.table('plan_changes').insert(row),
            f"recording plan change for {row.get('user_id')}"
        )

    def cancel_pending_plan_changes(self, user_id: str, notes: str) -> None:
        self._execute(
            self.supabase.table('plan_changes')
                .update({'status': 'cancelled', 'notes': notes, 'updated_at': utcnow_iso()})
                .eq('user_id', user_id)
                .eq('status', 'pending'),
            f"cancelling pending plan changes for {user_id}"
        )

    # Action records

    def _insert_one(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        result = self._execute(self.supabase.table(table).insert(row), f"inserting into {table}")
        if not result.data:
            raise InternalError(f"Insert into {table} returned no row")
        return result.data[0]

    def insert_call(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert_one('calls', row)

    def get_call_by_sid(self, call_sid: str) -> Optional[Dict[str, Any]]:
        result = self._execute(
            self.supabase.table('calls').select('*').eq('twilio_call_sid', call_sid).limit(1),
            f"fetching call {call_sid}"
        )
        return result.data[0] if result.data else None

    def update_call_by_sid(self, call_sid: str, fields: Dict[str, Any]) -> List[Dict[str, Any]]:
        result = self._execute(
            self.supabase.table('calls').update(fields).eq('twilio_call_sid', call_sid),
            f"updating call {call_sid}"
        )
        return result.data or []

    def insert_email(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert_one('emails', row)

    def insert_sms_conversation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert_one('sms_conversations', row)

    def update_sms_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> None:
        fields = {**fields, 'updated_at': utcnow_iso()}
        self._execute(
            self.supabase.table('sms_conversations').update(fields).eq('id', conversation_id),
            f"updating conversation {conversation_id}"
        )

    def get_active_conversation(self, phone_number: str) -> Optional[Dict[str, Any]]:
        """Most recent active conversation for a phone number"""
        result = self._execute(
            self.supabase.table('sms_conversations')
                .select('*')
                .eq('phone_number', phone_number)
                .eq('status', 'active')
                .order('created_at', desc=True)
                .limit(1),
            f"looking up active conversation for {phone_number}"
        )
        return result.data[0] if result.data else None

    def insert_sms_message(self, row: Dict[str, Any]) -> None:
        self._execute(self.supabase.table('sms_messages').insert(row), "storing SMS message")

    def get_conversation_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        result = self._execute(
            self.supabase.table('sms_messages')
                .select('direction, message_text')
                .eq('conversation_id', conversation_id)
                .order('created_at'),
            f"loading history for conversation {conversation_id}"
        )
        return result.data or []

    def insert_text_conversation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert_one('text_conversations', row)

    def get_text_conversation(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """In-app chat owned by user_id, or None"""
        result = self._execute(
            self.supabase.table('text_conversations')
                .select('*')
                .eq('id', conversation_id)
                .eq('user_id', user_id)
                .limit(1),
            f"fetching text conversation {conversation_id}"
        )
        return result.data[0] if result.data else None

    def update_text_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> None:
        fields = {**fields, 'updated_at': utcnow_iso()}
        self._execute(
            self.supabase.table('text_conversations').update(fields).eq('id', conversation_id),
            f"updating text conversation {conversation_id}"
        )
