"""
auth/validation.py -- Username, domain name and password policy checks.

Every public entry point of the auth core runs is_valid_username() before it
touches the repository. A username is accepted when it is either email-shaped
or a plain handle of letters, digits and "_", ".", "-".

Email syntax is checked with email-validator (the library behind pydantic's
EmailStr) as syntax only: no DNS traffic on a login path, and mailboxes on
special-use or dotless domains (corp.local, localhost) are as valid as the
domain names is_valid_domain_name() accepts.
"""

from __future__ import annotations

import re

from email_validator import EmailNotValidError, validate_email

from core.config import get_settings

_HANDLE_STRIP_RE = re.compile(r"[_.\-]")
_LABEL_RE = re.compile(r"^([a-z\d](-*[a-z\d])*)(\.([a-z\d](-*[a-z\d])*))*$", re.IGNORECASE)
_LENGTH_RE = re.compile(r"^[^.]{1,63}(\.[^.]{1,63})*$")


def is_email(value: str) -> bool:
    if not value:
        return False
    try:
        validate_email(value, check_deliverability=False, globally_deliverable=False, test_environment=True)
    except EmailNotValidError:
        return False
    return True


def is_valid_username(username: object) -> bool:
    """Return True for an email address or an alphanumeric-plus-_.- handle."""
    if not isinstance(username, str) or not username:
        return False
    if is_email(username):
        return True
    stripped = _HANDLE_STRIP_RE.sub("", username)
    # str.isalnum() accepts non-ASCII letters; handles are ASCII only.
    return stripped.isascii() and stripped.isalnum()


def normalize_username(username: str) -> str:
    return username.strip().lower()


def is_valid_domain_name(domain: object) -> bool:
    """Return True if domain is a syntactically valid (optionally IDN) domain name."""
    if not isinstance(domain, str) or not domain:
        return False
    try:
        ascii_name = domain.encode("idna").decode("ascii")
    except UnicodeError:
        return False
    return bool(
        _LABEL_RE.match(ascii_name) and 1 <= len(ascii_name) <= 253 and _LENGTH_RE.match(ascii_name)
    )


def meets_password_policy(password: str) -> bool:
    """Check a new mailbox password against PASSWORD_POLICY_REGEX."""
    return re.search(get_settings().password_policy_regex, password) is not None
