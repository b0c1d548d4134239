"""Password strength scoring and secure password generation.

Scoring is a point heuristic:
    +1 each for length >= 8, >= 12, >= 16
    +1 each for lowercase, uppercase, digit, symbol present
    -1 each for all digits, all letters, a run of 3+ identical characters
clamped to [0, 10] and bucketed into Weak / Fair / Strong / Very Strong.

Generation draws every character index from ``secrets`` (the OS CSPRNG).
"""

import re
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

LOWERCASE = "abcdefghijklmnopqrstuvwxyz"
UPPERCASE = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
DIGITS = "0123456789"
SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

SIMILAR_CHARS = set("ilLI|1oO0")
AMBIGUOUS_CHARS = set("{}[]()/\\'\"~,;.<>")

MIN_LENGTH = 8
MAX_LENGTH = 64
MAX_SCORE = 10

LABEL_WEAK = "Weak"
LABEL_FAIR = "Fair"
LABEL_STRONG = "Strong"
LABEL_VERY_STRONG = "Very Strong"

_REPEAT_RUN = re.compile(r"(.)\1{2,}")
_ALL_DIGITS = re.compile(r"^[0-9]+$")
_ALL_ALPHA = re.compile(r"^[A-Za-z]+$")


# ── Strength ────────────────────────────────────────────────────────


@dataclass
class StrengthReport:
    score: int
    label: str
    feedback: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"score": self.score, "label": self.label, "feedback": list(self.feedback)}


def strength_label(score: int) -> str:
    if score >= 7:
        return LABEL_VERY_STRONG
    if score >= 5:
        return LABEL_STRONG
    if score >= 3:
        return LABEL_FAIR
    return LABEL_WEAK


def check_strength(password: str) -> StrengthReport:
    """Score a password and explain which checks it failed."""
    password = password or ""
    score = 0
    feedback: List[str] = []

    length = len(password)
    if length >= 8:
        score += 1
    else:
        feedback.append("Use at least 8 characters")
    if length >= 12:
        score += 1
    elif length >= 8:
        feedback.append("Use 12 or more characters")
    if length >= 16:
        score += 1

    classes = (
        (r"[a-z]", "Add lowercase letters"),
        (r"[A-Z]", "Add uppercase letters"),
        (r"[0-9]", "Add numbers"),
        (r"[^A-Za-z0-9]", "Add symbols"),
    )
    for pattern, hint in classes:
        if re.search(pattern, password):
            score += 1
        else:
            feedback.append(hint)

    if _REPEAT_RUN.search(password):
        score -= 1
        feedback.append("Avoid repeating characters")
    if _ALL_DIGITS.match(password):
        score -= 1
        feedback.append("Use more than just numbers")
    if _ALL_ALPHA.match(password):
        score -= 1
        feedback.append("Add numbers or symbols")

    score = max(0, min(score, MAX_SCORE))
    return StrengthReport(score=score, label=strength_label(score), feedback=feedback)


# ── Generation ──────────────────────────────────────────────────────


@dataclass
class PasswordOptions:
    """Options for generate_password()."""

    length: int = 16
    uppercase: bool = True
    lowercase: bool = True
    numbers: bool = True
    symbols: bool = True
    exclude_similar: bool = False      # i l L I | 1 o O 0
    exclude_ambiguous: bool = False    # brackets, quotes, slashes, punctuation

    def character_classes(self) -> List[str]:
        """Enabled character pools after exclusions (empty pools dropped)."""
        pools = []
        for enabled, chars in (
            (self.lowercase, LOWERCASE),
            (self.uppercase, UPPERCASE),
            (self.numbers, DIGITS),
            (self.symbols, SYMBOLS),
        ):
            if not enabled:
                continue
            if self.exclude_similar:
                chars = "".join(c for c in chars if c not in SIMILAR_CHARS)
            if self.exclude_ambiguous:
                chars = "".join(c for c in chars if c not in AMBIGUOUS_CHARS)
            if chars:
                pools.append(chars)
        return pools

    def validate(self):
        if not isinstance(self.length, int) or not MIN_LENGTH <= self.length <= MAX_LENGTH:
            raise ValueError(f"Password length must be between {MIN_LENGTH} and {MAX_LENGTH}")
        if not self.character_classes():
            raise ValueError("At least one character class must be enabled")


def _pick(chars: str) -> str:
    return chars[secrets.randbelow(len(chars))]


def generate_password(options: Optional[PasswordOptions] = None) -> str:
    """Generate a random password.

    Every enabled character class appears at least once; the remaining
    characters are drawn from the union of the enabled classes.

    Raises:
        ValueError: length outside [8, 64] or no usable character class.
    """
    options = options or PasswordOptions()
    options.validate()

    pools = options.character_classes()
    charset = "".join(pools)
    chars = [_pick(pool) for pool in pools]
    chars.extend(_pick(charset) for _ in range(options.length - len(chars)))

    # Fisher-Yates so the guaranteed characters are not always in front
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)
