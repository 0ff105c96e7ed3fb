"""
Signature Verifier

Checks a typed signature against the signer's name on file and checks that
the signer's account holds the role they claim.

A typed name is a usability control, not a security boundary: the
authorization boundary is the session-authenticated (user_id, role_claim)
pair supplied by the caller. Mismatches return False; the certification
state machine turns a False into SignatureMismatchError.

Matching rule, after trimming, collapsing inner whitespace and case-folding:
- the names are equal, or
- they have the same number of tokens, the final token (surname) is equal,
  and each earlier asserted token is either equal to the account token or
  is its initial ("J" or "J.").

"J. Smith" matches "John Smith"; "Jon Smith" does not. No fuzzy matching.
"""
import logging
from typing import Iterable, Optional

from pageant_engine.orm.user import User, UserRole
from pageant_engine.rbac import parse_role

logger = logging.getLogger(__name__)


def normalize_name(name: Optional[str]) -> str:
    if not name:
        return ""
    return " ".join(name.split()).casefold()


def _token_matches(asserted: str, on_file: str) -> bool:
    if asserted == on_file:
        return True
    initial = asserted[:-1] if asserted.endswith(".") else asserted
    return len(initial) == 1 and on_file.startswith(initial)


def names_match(asserted_name: Optional[str], name_on_file: Optional[str]) -> bool:
    asserted = normalize_name(asserted_name)
    on_file = normalize_name(name_on_file)
    if not asserted or not on_file:
        return False
    if asserted == on_file:
        return True

    asserted_tokens = asserted.split(" ")
    file_tokens = on_file.split(" ")
    if len(asserted_tokens) != len(file_tokens) or len(file_tokens) < 2:
        return False
    if asserted_tokens[-1] != file_tokens[-1]:
        return False
    return all(
        _token_matches(a, f)
        for a, f in zip(asserted_tokens[:-1], file_tokens[:-1])
    )


class SignatureVerifier:

    @staticmethod
    def verify(user: Optional[User], asserted_name: Optional[str]) -> bool:
        """Compare the asserted name with the preferred name, else the full name."""
        if user is None:
            return False
        matched = names_match(asserted_name, user.signature_name)
        if not matched:
            logger.info(f"Signature mismatch for user {user.id}")
        return matched

    @staticmethod
    def has_role(user: Optional[User], role_claim, allowed: Iterable[UserRole]) -> bool:
        """True when the claim is allowed and the account actually holds it."""
        if user is None:
            return False
        role = parse_role(role_claim)
        if role is None or role not in set(allowed):
            return False
        return user.role == role
