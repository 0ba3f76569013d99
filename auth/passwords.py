"""
auth/passwords.py -- Password hashing, policy checks and temporary passwords.

Hashing:
  bcrypt over base64(SHA-256(salt + plaintext)). bcrypt only looks at the
  first 72 bytes of its input and bcrypt 5.x raises on anything longer, so
  the pre-hash keeps every character of a long passphrase significant while
  bcrypt still supplies the cost factor. The salt is a fresh UUID4 string per
  credential version and is stored beside the hash; bcrypt adds its own
  internal salt on top.

  bcrypt is used directly rather than through passlib, whose wrap-bug probe
  trips the 72-byte check in current bcrypt releases.

Policy:
  check_policy() raises PasswordValidationError with the first violated rule.
  Rules are checked in a fixed order (length, letters, capitals, digits,
  non alpha-numerics, repetition, username), and a threshold of 0 skips its
  rule.

Layer rule: pure functions, no database access.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string
import uuid

import bcrypt

from auth.errors import PasswordValidationError
from core.config import PasswordRules

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def new_salt() -> str:
    return str(uuid.uuid4())


def _prehash(salt: str, plain: str) -> bytes:
    digest = hashlib.sha256((salt + plain).encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(plain: str, salt: str, rounds: int = 12) -> str:
    """Return the bcrypt hash of salt + plain as a str."""
    return bcrypt.hashpw(_prehash(salt, plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, salt: str, hashed: str) -> bool:
    """Return True if salt + plain matches the stored hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(_prehash(salt, plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization: unknown usernames still pay one bcrypt comparison
# against a dummy hash built at the same cost as real ones, so response time
# does not reveal whether the account exists.
DUMMY_SALT = "00000000-0000-4000-8000-000000000000"


def make_dummy_hash(rounds: int = 12) -> str:
    return hash_password("membership_timing_dummy", DUMMY_SALT, rounds)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def contains_repeating_groups(password: str) -> bool:
    """True if the password has a run of one character three or more times,
    or a group of two or more characters immediately repeated.

    "aaa1", "abab" and "xyzxyz" are repetitive. "aab" and "abcab" are not.
    """
    n = len(password)
    for i in range(n - 2):
        if password[i] == password[i + 1] == password[i + 2]:
            return True
    for size in range(2, n // 2 + 1):
        for i in range(n - 2 * size + 1):
            if password[i : i + size] == password[i + size : i + 2 * size]:
                return True
    return False


def count_classes(password: str) -> tuple[int, int, int, int]:
    """Return (letters, capitals, digits, non_alpha_numerics).

    Letters and capitals are ASCII only. Any other numeric code point counts
    as a digit; everything else is non alpha-numeric.
    """
    letters = capitals = digits = others = 0
    for c in password:
        if "A" <= c <= "Z":
            letters += 1
            capitals += 1
        elif "a" <= c <= "z":
            letters += 1
        elif c.isnumeric():
            digits += 1
        else:
            others += 1
    return letters, capitals, digits, others


def check_policy(password: str, username: str, rules: PasswordRules) -> None:
    """Raise PasswordValidationError if password breaks any configured rule."""
    if rules.min_characters > 0 and len(password) < rules.min_characters:
        raise PasswordValidationError(f"Password must have at least {rules.min_characters} characters")

    letters, capitals, digits, others = count_classes(password)

    if rules.min_letters > 0 and letters < rules.min_letters:
        raise PasswordValidationError(f"Password must contain at least {rules.min_letters} letter(s)")
    if rules.min_capitals > 0 and capitals < rules.min_capitals:
        raise PasswordValidationError(f"Password must contain at least {rules.min_capitals} capital letter(s)")
    if rules.min_digits > 0 and digits < rules.min_digits:
        raise PasswordValidationError(f"Password must contain at least {rules.min_digits} digit(s)")
    if rules.min_non_alpha_numerics > 0 and others < rules.min_non_alpha_numerics:
        raise PasswordValidationError(
            f"Password must contain at least {rules.min_non_alpha_numerics} non alpha-numeric character(s)"
        )
    if not rules.allow_repetitive_characters and contains_repeating_groups(password):
        raise PasswordValidationError("Password must not contain repetitive groups of characters")
    if not rules.can_contain_username and username and username.lower() in password.lower():
        raise PasswordValidationError("Password must not contain the username")


# ---------------------------------------------------------------------------
# Temporary passwords
# ---------------------------------------------------------------------------

_SYMBOLS = "!#$%&*+-=?@^_"
_TEMP_LENGTH = 14


def generate_temporary_password(rules: PasswordRules, username: str = "") -> str:
    """Return a random password that passes check_policy() for these rules.

    Required characters of each class are drawn first, the remainder is
    filled from the full alphabet, then the whole is shuffled. Candidates
    that trip the repetition or username rule are discarded.
    """
    rng = secrets.SystemRandom()
    alphabet = string.ascii_letters + string.digits + _SYMBOLS
    length = max(_TEMP_LENGTH, rules.min_characters)
    lower_needed = max(0, rules.min_letters - rules.min_capitals)

    while True:
        chars = (
            [rng.choice(string.ascii_uppercase) for _ in range(rules.min_capitals)]
            + [rng.choice(string.ascii_lowercase) for _ in range(lower_needed)]
            + [rng.choice(string.digits) for _ in range(rules.min_digits)]
            + [rng.choice(_SYMBOLS) for _ in range(rules.min_non_alpha_numerics)]
        )
        chars += [rng.choice(alphabet) for _ in range(max(0, length - len(chars)))]
        rng.shuffle(chars)
        candidate = "".join(chars)
        try:
            check_policy(candidate, username, rules)
        except PasswordValidationError:
            continue
        return candidate
