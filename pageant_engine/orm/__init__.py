from .base import Base

# Accounts and contest structure
from .user import User, UserRole
from .contest import (
    AggregationRule,
    Contest,
    Category,
    Subcategory,
    Criterion,
    Contestant,
    SubcategoryJudge,
    SubcategoryContestant,
)

# Scoring + certification
from .score import Score, OverallDeduction
from .audit_log import CertificationAuditEntry, AuditAction
from .certification import (
    CertificationState,
    CertificationLevel,
    SubcategoryCertification,
    JudgeCertification,
)
from .score_removal import ScoreRemovalRequest, RemovalStatus
