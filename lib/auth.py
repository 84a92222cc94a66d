import logging
from typing import Optional

from lib.error_handler import AuthError
from lib.models import AuthenticatedUser

logger = logging.getLogger(__name__)

class SupabaseAuth:
    """Resolves a bearer token to a user via Supabase Auth"""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    def authenticate(self, authorization: Optional[str]) -> AuthenticatedUser:
        if not authorization:
            raise AuthError("Missing authorization header")

        scheme, _, credentials = authorization.strip().partition(' ')
        token = credentials.strip() if scheme.lower() == 'bearer' else authorization.strip()
        if not token:
            raise AuthError("Missing authorization header")

        try:
            response = self.supabase.auth.get_user(token)
        except Exception as e:
            logger.info(f"Token rejected by Supabase: {str(e)}")
            raise AuthError("Unauthorized")

        user = getattr(response, 'user', None)
        if user is None:
            raise AuthError("Unauthorized")

        return AuthenticatedUser(id=str(user.id), email=getattr(user, 'email', None))
