"""Role vocabulary and the per-resource permission tier classifier."""
from __future__ import annotations

import json
import logging
from enum import Enum, IntEnum
from typing import Iterable

from openproposal.models import Proposal

log = logging.getLogger(__name__)


class Role(str, Enum):
    PRINCIPAL_INVESTIGATOR = "PRINCIPAL_INVESTIGATOR"
    CO_PRINCIPAL_INVESTIGATOR = "CO_PRINCIPAL_INVESTIGATOR"
    PROGRAM_OFFICER = "PROGRAM_OFFICER"
    CALL_COORDINATOR = "CALL_COORDINATOR"
    REVIEWER = "REVIEWER"
    AREA_CHAIR = "AREA_CHAIR"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    INSTITUTIONAL_ADMIN = "INSTITUTIONAL_ADMIN"


class Tier(IntEnum):
    PUBLIC = 0
    AUTHOR = 1
    REVIEWER = 2
    ADMIN = 3


ADMIN_ROLES = frozenset({
    Role.SYSTEM_ADMIN, Role.INSTITUTIONAL_ADMIN, Role.PROGRAM_OFFICER, Role.AREA_CHAIR,
})
REVIEW_ROLES = frozenset({Role.REVIEWER, Role.AREA_CHAIR})
AUTHOR_ROLES = frozenset({Role.PRINCIPAL_INVESTIGATOR, Role.CO_PRINCIPAL_INVESTIGATOR})
# Roles allowed to list their review assignments.
ASSIGNMENT_VIEW_ROLES = REVIEW_ROLES | {Role.PROGRAM_OFFICER}


def parse_roles(raw: Iterable[str] | str | None) -> frozenset[Role]:
    """Validate a loosely-typed role list (or its JSON form) into a closed role set.

    Unknown role strings are dropped and logged.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw or "[]")
        except json.JSONDecodeError:
            log.warning("Unparseable role list %r, treating as empty", raw)
            return frozenset()
        if not isinstance(raw, list):
            log.warning("Role list is not a list: %r", raw)
            return frozenset()
    roles = set()
    for value in raw:
        try:
            roles.add(Role(value))
        except ValueError:
            log.warning("Ignoring unknown role %r", value)
    return frozenset(roles)


def is_admin(roles: Iterable[Role]) -> bool:
    return not ADMIN_ROLES.isdisjoint(roles)


def can_review(roles: Iterable[Role]) -> bool:
    return not REVIEW_ROLES.isdisjoint(roles)


def can_author(roles: Iterable[Role]) -> bool:
    return not AUTHOR_ROLES.isdisjoint(roles)


def is_participant(user_id: int | None, proposal: Proposal) -> bool:
    """True when *user_id* is the PI or a collaborator of *proposal*."""
    if user_id is None:
        return False
    if proposal.principal_investigator_id == user_id:
        return True
    return any(c.user_id == user_id for c in proposal.collaborators)


def classify(
    roles: Iterable[Role], user_id: int | None = None, proposal: Proposal | None = None,
) -> Tier:
    """Return the highest tier the requester qualifies for on *proposal*.

    Without a proposal the AUTHOR tier cannot apply, so the result is one of
    ADMIN, REVIEWER or PUBLIC.
    """
    roles = frozenset(roles)
    if is_admin(roles):
        return Tier.ADMIN
    if Role.REVIEWER in roles:
        return Tier.REVIEWER
    if proposal is not None and is_participant(user_id, proposal):
        return Tier.AUTHOR
    return Tier.PUBLIC
