"""
Lookup of registered passkeys.

Registration and assertion happen in the WebAuthn service; the two-factor
flows only need to know whether a user has any passkey to offer it as an
alternate factor.
"""
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .auth_db import AuthDB
from .schema_probe import SchemaProbe, is_schema_error, probe_for

logger = logging.getLogger(__name__)


class PasskeyRegistry:

    def __init__(self, db: AuthDB, probe: Optional[SchemaProbe] = None):
        self.db = db
        self.probe = probe or probe_for(db.engine)

    def has_passkey(self, user_id: str) -> bool:
        """True if the user has at least one passkey. Lookup failures count as no passkey."""
        user_id = str(user_id or "").strip()
        if not user_id:
            return False

        try:
            with self.db.get_session() as session:
                row = session.execute(
                    text("SELECT credential_id FROM passkeys WHERE user_id = :user_id LIMIT 1"),
                    {"user_id": user_id}
                ).fetchone()
        except SQLAlchemyError as e:
            if not is_schema_error(self.probe, e, "passkeys", ("credential_id", "user_id")):
                logger.error(f"Passkey lookup failed for user {user_id}: {e}")
            return False

        return row is not None
