"""
auth/access.py -- Domain and object access decisions for admins.

Pure predicates: every function answers True or False and never raises. A
repository failure is logged and answered with False.

Domain access:
  superadmin   any existing domain or alias domain.
  domainadmin  an active grant naming the domain itself, or
               an active grant naming an alias domain whose target is the domain, or
               an active grant naming the target of the alias domain being asked about.
  user         never.

Object access (mailboxes, aliases): the owner of an object always reaches it;
anyone else needs domain access to the object's owning domain.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from auth.models import ADMIN_ROLES, Role
from auth.repository import AccountRepository, StorageError
from auth.validation import is_valid_domain_name, is_valid_username

logger = logging.getLogger("mailadmin.auth.access")


def _as_role(role: object) -> Role | None:
    try:
        return Role(role)
    except ValueError:
        return None


def has_domain_access(store: AccountRepository, username: str, role: Role | str, domain: str) -> bool:
    role = _as_role(role)
    if not is_valid_username(username) or not is_valid_domain_name(domain) or role not in ADMIN_ROLES:
        return False
    try:
        if role == Role.SUPERADMIN:
            return store.domain_exists(domain) or store.alias_domain_target(domain) is not None
        return _domain_admin_reaches(store, username, domain)
    except StorageError as exc:
        logger.warning("Domain access check for %s on %s failed: %s", username, domain, exc)
        return False


def _domain_admin_reaches(store: AccountRepository, username: str, domain: str) -> bool:
    if store.domain_admin_grant_exists(username, domain):
        return True
    for alias_domain in store.alias_domains_for_target(domain):
        if store.domain_admin_grant_exists(username, alias_domain):
            return True
    target = store.alias_domain_target(domain)
    return target is not None and store.domain_admin_grant_exists(username, target)


def has_mailbox_object_access(store: AccountRepository, username: str, role: Role | str, mailbox: str) -> bool:
    return _has_object_access(store, username, role, mailbox, lambda obj: store.mailbox_owner_domain(obj))


def has_alias_object_access(store: AccountRepository, username: str, role: Role | str, address: str) -> bool:
    return _has_object_access(store, username, role, address, lambda obj: store.alias_owner_domain(obj))


def _has_object_access(
    store: AccountRepository,
    username: str,
    role: Role | str,
    obj: str,
    owner_domain: Callable[[str], str | None],
) -> bool:
    # owner_domain must not reach the store before the caller is validated.
    role = _as_role(role)
    if not is_valid_username(username) or role is None:
        return False
    if username == obj:
        return True
    try:
        domain = owner_domain(obj)
    except StorageError as exc:
        logger.warning("Owner lookup of %s for %s failed: %s", obj, username, exc)
        return False
    if domain is None:
        return False
    return has_domain_access(store, username, role, domain)
