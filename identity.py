import logging

from supabase import Client

log = logging.getLogger(__name__)


class IdentityProviderError(Exception):
    """The identity provider could not answer."""


class IdentityProvider:
    def user_exists(self, uid: str) -> bool:
        raise NotImplementedError

    def revoke_sessions(self, uid: str) -> None:
        raise NotImplementedError


class SupabaseIdentityProvider(IdentityProvider):
    """
    Supabase Auth as the identity provider.

    Session revocation goes through the revoke_user_sessions() SQL function
    from schema.sql, since the admin API cannot sign a user out by id.
    """

    def __init__(self, client: Client):
        self.client = client

    def user_exists(self, uid):
        try:
            res = self.client.auth.admin.get_user_by_id(uid)
        except Exception as e:
            # Auth answers 404 for unknown ids and 400 for ids that are not UUIDs
            if getattr(e, "status", None) in (400, 404):
                return False
            raise IdentityProviderError(f"user lookup failed: {e}") from e
        return bool(getattr(res, "user", None))

    def revoke_sessions(self, uid):
        try:
            self.client.rpc("revoke_user_sessions", {"target_user_id": uid}).execute()
        except Exception as e:
            raise IdentityProviderError(f"session revocation failed: {e}") from e
        log.info("[AUTH] revoked sessions uid=%s", uid)
