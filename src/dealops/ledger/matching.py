"""Name and contact matching for reconciliation.

Decides whether two free-text records refer to the same person:
- names: normalized exact match, or first token + last token match
- emails: trimmed, case-insensitive equality
- phones: last 9 digits equal (ignores country/area code prefixes)

Middle name tokens are ignored: "Maria Clara Souza" and "Maria Souza"
match, while "Ana Maria Lima" vs "Ana Lima Maria" do not. Orphan promotion
depends on exactly this rule.

Every function tolerates None/blank input and returns "no match".
"""

from __future__ import annotations

import re
import unicodedata

PHONE_KEY_DIGITS = 9

_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"\D+")


def normalize_name(value: str | None) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace.

    Punctuation is removed rather than replaced, so "Ana-Maria" stays one
    token ("anamaria"). Letters of any script are kept.
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value.lower())
    kept = "".join(
        ch
        for ch in decomposed
        if not unicodedata.combining(ch) and (ch.isalnum() or ch.isspace())
    )
    return _WHITESPACE.sub(" ", kept).strip()


def name_tokens(value: str | None) -> list[str]:
    normalized = normalize_name(value)
    return normalized.split(" ") if normalized else []


def names_match(a: str | None, b: str | None) -> bool:
    """Return True when two names refer to the same person.

    Args:
        a: First free-text name.
        b: Second free-text name.

    Returns:
        True on normalized equality, or when both the first and the last
        tokens agree. False if either side is missing or blank.
    """
    tokens_a = name_tokens(a)
    tokens_b = name_tokens(b)
    if not tokens_a or not tokens_b:
        return False
    if tokens_a == tokens_b:
        return True
    return tokens_a[0] == tokens_b[0] and tokens_a[-1] == tokens_b[-1]


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    email = value.strip().lower()
    return email or None


def emails_match(a: str | None, b: str | None) -> bool:
    email_a = normalize_email(a)
    email_b = normalize_email(b)
    return email_a is not None and email_a == email_b


def normalize_phone(value: str | None) -> str:
    """Strip everything but digits."""
    if not value:
        return ""
    return _NON_DIGIT.sub("", value)


def phone_key(value: str | None) -> str | None:
    """Comparison key for a phone number: its last 9 digits."""
    digits = normalize_phone(value)
    if not digits:
        return None
    return digits[-PHONE_KEY_DIGITS:]


def phones_match(a: str | None, b: str | None) -> bool:
    key_a = phone_key(a)
    key_b = phone_key(b)
    return key_a is not None and key_a == key_b
