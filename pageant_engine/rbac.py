"""
pageant_engine/rbac.py
Role-based permission matrix for scoring and certification actions.

The engine never looks up a "current user". Callers pass an explicit
(user_id, role_claim) pair taken from their authenticated session; this
module decides whether that claim may perform an action.
"""
import logging
from typing import Dict, FrozenSet, Optional, Union

from pageant_engine.errors import RoleError
from pageant_engine.orm.user import UserRole

logger = logging.getLogger(__name__)

# ================= PERMISSION MATRIX =================

CERTIFICATION_PERMISSIONS: Dict[str, FrozenSet[UserRole]] = {
    "certify_totals": frozenset({UserRole.tally_master}),
    "certify_final": frozenset({UserRole.auditor, UserRole.board}),
    "revoke_certification": frozenset({UserRole.organizer, UserRole.board}),
    "add_deduction": frozenset({UserRole.organizer, UserRole.judge}),
    "request_score_removal": frozenset({UserRole.board}),
    "cancel_score_removal": frozenset({UserRole.board}),
    "sign_score_removal": frozenset({UserRole.auditor, UserRole.tally_master, UserRole.judge}),
}

# Judges may only sign deductions when they are head judge
HEAD_JUDGE_ONLY_ACTIONS = frozenset({"add_deduction", "sign_score_removal"})


def parse_role(role_claim: Union[str, UserRole, None]) -> Optional[UserRole]:
    """Map a role claim to UserRole; unknown claims map to None."""
    if role_claim is None:
        return None
    if isinstance(role_claim, UserRole):
        return role_claim
    try:
        return UserRole(str(role_claim).strip().lower())
    except ValueError:
        return None


def allowed_roles(action: str) -> FrozenSet[UserRole]:
    return CERTIFICATION_PERMISSIONS.get(action, frozenset())


def require_role(role_claim: Union[str, UserRole, None], action: str) -> UserRole:
    """
    Return the parsed role if it may perform ``action``.

    Raises:
        RoleError: If the claim is unknown or not permitted
    """
    role = parse_role(role_claim)
    permitted = allowed_roles(action)
    if role is None or role not in permitted:
        logger.warning(f"[RBAC DENIED] action={action} role_claim={role_claim!r}")
        raise RoleError(
            f"Role '{role_claim}' may not perform {action}",
            details={
                "action": action,
                "role_claim": str(role_claim),
                "allowed_roles": sorted(r.value for r in permitted),
            }
        )
    return role


def require_account_role(account, role: UserRole, action: str) -> None:
    """
    The account behind an accepted claim must actually hold that role.

    Judges acting on HEAD_JUDGE_ONLY_ACTIONS must also be head judge.

    Raises:
        RoleError: If the account does not back the claim
    """
    holds_role = account is not None and account.role == role
    if holds_role and role == UserRole.judge and action in HEAD_JUDGE_ONLY_ACTIONS:
        holds_role = bool(account.is_head_judge)
    if not holds_role:
        account_id = account.id if account is not None else None
        logger.warning(
            f"[RBAC DENIED] action={action} user={account_id} "
            f"role_claim={role.value!r} does not match account"
        )
        raise RoleError(
            f"User {account_id} may not perform {action} as {role.value}",
            details={"user_id": account_id, "role_claim": role.value, "action": action}
        )
