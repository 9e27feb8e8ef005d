"""
auth/provisioning.py -- Default profile inference from an institutional email.

The one-step "simple auth" flow creates an identity the first time someone
verifies a code for an address we have never seen. Everything about that
identity is guessed from the local part of the address:

    security.incharge@x.in  -> security_incharge
    ravi.hod@x.in           -> hod, name "Ravi"
    cse.kumar@x.in          -> faculty, "Computer Science and Engineering"

Rules are ordered tables and the first match wins. Role needles match
anywhere in the local part; department codes must be a whole dot, dash or
underscore separated token, so "mech" is not read as "ec". An admin can
correct any of it afterwards through the users API.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from core.models import Role

_ROLE_RULES: tuple[tuple[Role, tuple[str, ...]], ...] = (
    (Role.admin, ("admin", "principal", "director")),
    (Role.security_incharge, ("security.incharge", "security.head", "securityincharge")),
    (Role.security, ("security",)),
    (Role.hod, ("hod", "head")),
)

_DEPARTMENT_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Computer Science and Engineering", ("cse", "cs")),
    ("Electronics and Communication Engineering", ("ece", "ec")),
    ("Electrical and Electronics Engineering", ("eee", "ee")),
    ("Mechanical Engineering", ("mech", "me")),
    ("Civil Engineering", ("civil", "ce")),
    ("Information Technology", ("it",)),
)

DEFAULT_DEPARTMENT = "General"

_EMPLOYEE_PREFIX = {
    Role.admin: "ADM",
    Role.security_incharge: "SEC",
    Role.security: "SEC",
    Role.hod: "HOD",
    Role.faculty: "FAC",
}

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class Profile:
    email: str
    name: str
    role: Role
    department: str
    employee_id: str


def is_valid_email(email: str, allowed_domain: str = "") -> bool:
    """Syntactic check plus, when allowed_domain is set, an exact domain match."""
    if not email or not _EMAIL_RE.match(email.strip()):
        return False
    if not allowed_domain:
        return True
    return email.strip().lower().rsplit("@", 1)[1] == allowed_domain.lower().lstrip("@")


def _local_part(email: str) -> str:
    return email.strip().split("@", 1)[0].lower()


def infer_role(email: str) -> Role:
    local = _local_part(email)
    for role, needles in _ROLE_RULES:
        if any(n in local for n in needles):
            return role
    return Role.faculty


def infer_department(email: str) -> str:
    tokens = set(re.split(r"[._-]+", _local_part(email)))
    for department, codes in _DEPARTMENT_RULES:
        if tokens.intersection(codes):
            return department
    return DEFAULT_DEPARTMENT


def infer_name(email: str) -> str:
    local = email.strip().split("@", 1)[0]
    local = re.sub(r"\.(hod|head|admin|security)$", "", local, flags=re.IGNORECASE)
    local = re.sub(r"^(dr|prof|mr|ms|mrs)\.", "", local, flags=re.IGNORECASE)
    local = re.sub(r"\d+$", "", local)
    words = [w for w in re.split(r"[._-]+", local) if w]
    return " ".join(w.capitalize() for w in words) or "User"


def employee_id_for(email: str, role: Role) -> str:
    """FAC/HOD/SEC/ADM + first six alphanumerics + a short digest of the address.

    The digest keeps two addresses with the same leading characters from
    colliding on the unique employee_id column.
    """
    normalized = email.strip().lower()
    stem = re.sub(r"[^a-z0-9]", "", _local_part(normalized))[:6].upper()
    digest = hashlib.sha256(normalized.encode()).hexdigest()[:4].upper()
    return f"{_EMPLOYEE_PREFIX[role]}{stem}{digest}"


def profile_from_email(email: str) -> Profile:
    role = infer_role(email)
    return Profile(
        email=email.strip().lower(),
        name=infer_name(email),
        role=role,
        department=infer_department(email),
        employee_id=employee_id_for(email, role),
    )
