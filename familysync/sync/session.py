"""
Sync Session

Who is syncing, and with which secret. Created at sign-in, torn down at
sign-out. The orchestrator holds one and never reaches for globals.
"""

from enum import Enum
from typing import Optional

from familysync.services.crypto import Secret


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    TORN_DOWN = "torn_down"


class SyncSession:
    """Family identity plus the current encryption secret."""

    def __init__(
        self,
        family_id: Optional[str] = None,
        family_name: Optional[str] = None,
        secret: Optional[Secret] = None,
        encryption_required: bool = False,
    ):
        self.family_id = family_id
        self.family_name = family_name
        self.secret = secret
        self.encryption_required = encryption_required
        self.state = SessionState.CREATED

    def activate(self) -> None:
        if self.state == SessionState.TORN_DOWN:
            raise RuntimeError("A torn-down session cannot be reactivated")
        self.state = SessionState.ACTIVE

    def adopt_family(self, family_id: Optional[str], family_name: Optional[str]) -> None:
        """Take the family identity from a sync file if we don't have one yet."""
        if self.family_id is None and family_id:
            self.family_id = family_id
        if self.family_name is None and family_name:
            self.family_name = family_name

    def set_secret(self, secret: Optional[Secret]) -> None:
        self.secret = secret

    def teardown(self) -> None:
        self.secret = None
        self.family_id = None
        self.family_name = None
        self.encryption_required = False
        self.state = SessionState.TORN_DOWN
