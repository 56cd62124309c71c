"""
Local Account Model.

Pydantic model for a row of the ``accounts`` table, the authoritative
local credential store.  A row mirrors a remote identity once
``remote_uid`` is attached.
"""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel


class LocalAccount(BaseModel):
    """Represents a local user account.

    ``username`` is the immutable primary key.  For accounts that come
    from the remote provider it is the part of the email before ``@``.

    ``password`` is stored as entered.  Existing installations compare
    it verbatim and other subsystems read the same table, so hashing it
    would break them.
    """

    STARTING_RATING: ClassVar[int] = 1000

    username: str
    password: str
    email: Optional[str] = None
    remote_uid: Optional[str] = None
    full_name: str = ""
    current_rating: int = STARTING_RATING
    contests_participated: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @property
    def has_remote_identity(self) -> bool:
        return bool(self.remote_uid)

    def public_view(self) -> "LocalAccount":
        """Return a copy with the password blanked, for outcomes and logs."""
        return self.model_copy(update={"password": ""})
