"""Safe-exit and decoy code hashing.

Codes are short numeric PINs. They are stored as keyed HMAC-SHA256 digests
so a leaked table cannot be brute-forced without the service secret.
"""
import enum
import hashlib
import hmac
from typing import Optional

from .errors import ValidationError
from .models import SafetyCodes

MIN_CODE_LENGTH = 3
MAX_CODE_LENGTH = 8


class CodeMatch(str, enum.Enum):
    SAFE = "safe"
    DECOY = "decoy"
    NONE = "none"


def hash_code(code: str, key: str) -> str:
    return hmac.new(key.encode(), code.encode(), hashlib.sha256).hexdigest()


def validate_code(code: str, label: str = "code"):
    if not code or not code.isdigit():
        raise ValidationError(f"{label} must be numeric")
    if not MIN_CODE_LENGTH <= len(code) <= MAX_CODE_LENGTH:
        raise ValidationError(f"{label} must be {MIN_CODE_LENGTH}-{MAX_CODE_LENGTH} digits")


def validate_code_pair(safe_code: str, decoy_code: str):
    validate_code(safe_code, "Safe code")
    validate_code(decoy_code, "Decoy code")
    if safe_code == decoy_code:
        raise ValidationError("Decoy code must be different from safe code")


def match_code(code: str, codes: Optional[SafetyCodes], key: str) -> CodeMatch:
    if codes is None:
        return CodeMatch.NONE
    digest = hash_code(code, key)
    # Both comparisons always run so timing does not reveal which one matched
    is_safe = hmac.compare_digest(digest, codes.safe_code_hash)
    is_decoy = hmac.compare_digest(digest, codes.decoy_code_hash)
    if is_decoy:
        return CodeMatch.DECOY
    if is_safe:
        return CodeMatch.SAFE
    return CodeMatch.NONE
