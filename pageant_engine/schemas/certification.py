"""
pageant_engine/schemas/certification.py
Read models for certification status and dashboards
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from pageant_engine.orm.certification import CertificationState


class JudgeSignoff(BaseModel):
    judge_id: int
    judge_name: Optional[str] = None
    certified: bool = False
    certified_at: Optional[datetime] = None
    signature_name: Optional[str] = None


class SignerInfo(BaseModel):
    signer_id: Optional[int] = None
    signer_role: Optional[str] = None
    signature_name: Optional[str] = None
    certified_at: Optional[datetime] = None


class CertificationStatus(BaseModel):
    """
    Everything a certification dashboard shows for one subcategory.

    ``configuration_errors`` lists setup problems that block sign-off
    (for example an empty judge roster); they are reported here instead of
    raised so a dashboard can render them.
    """
    subcategory_id: int
    subcategory_name: Optional[str] = None
    category_id: Optional[int] = None
    state: CertificationState = CertificationState.OPEN
    version: int = 0
    judges: List[JudgeSignoff] = Field(default_factory=list)
    certified_judge_count: int = 0
    assigned_judge_count: int = 0
    tally: Optional[SignerInfo] = None
    final: Optional[SignerInfo] = None
    revocation_count: int = 0
    configuration_errors: List[str] = Field(default_factory=list)


class CertificationDashboard(BaseModel):
    category_id: int
    category_name: Optional[str] = None
    subcategories: List[CertificationStatus] = Field(default_factory=list)
    fully_certified: bool = False
