"""
pageant_engine/orm/user.py
Accounts as seen by the certification engine.

Authentication lives outside the engine; a User row only carries what the
engine needs to check a signer: names for the typed signature and the role
held on the account.
"""
from enum import Enum

from sqlalchemy import Column, String, Boolean, Enum as SQLEnum

from pageant_engine.orm.base import BaseModel


class UserRole(str, Enum):
    """Roles taking part in scoring and sign-off"""
    judge = "judge"
    tally_master = "tally_master"
    auditor = "auditor"
    board = "board"
    organizer = "organizer"


class User(BaseModel):
    __tablename__ = "users"

    full_name = Column(String(200), nullable=False)
    preferred_name = Column(String(200), nullable=True)
    role = Column(SQLEnum(UserRole, native_enum=False, length=32), nullable=False, index=True)

    # Head judges may sign overall deductions
    is_head_judge = Column(Boolean, nullable=False, default=False)

    @property
    def signature_name(self) -> str:
        """Name a typed signature is checked against."""
        if self.preferred_name and self.preferred_name.strip():
            return self.preferred_name
        return self.full_name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "preferred_name": self.preferred_name,
            "role": self.role.value if self.role else None,
            "is_head_judge": bool(self.is_head_judge),
        }
