# roles.py
# -----------------------------------------------------------------------------
# Caller identity as forwarded by the authorization layer, and the scope rules
# the CBT core applies to it. Roles are a closed set; unknown role names are
# dropped when parsing.
# -----------------------------------------------------------------------------

from enum import Enum
from typing import FrozenSet, Iterable, NamedTuple, Optional

from errors import NotFoundError, ScopeError

INTERNAL = "Internal"
EXTERNAL = "External"


class Role(Enum):
    STUDENT = "Student"
    NEW_STUDENT = "NewStudent"
    PARENT = "Parent"
    TEACHER = "Teacher"
    ADMIN = "Admin"
    SUPER_ADMIN = "SuperAdmin"


# highest privilege first; used to pick the role a request acts under
_PRECEDENCE = (
    Role.SUPER_ADMIN,
    Role.ADMIN,
    Role.TEACHER,
    Role.NEW_STUDENT,
    Role.STUDENT,
    Role.PARENT,
)


class Caller(NamedTuple):
    user_id: str
    roles: FrozenSet[Role]
    branch_id: Optional[str] = None
    class_id: Optional[str] = None
    staff_id: Optional[str] = None

    def has(self, role: Role) -> bool:
        return role in self.roles

    @property
    def primary_role(self) -> Optional[Role]:
        for role in _PRECEDENCE:
            if role in self.roles:
                return role
        return None


def parse_roles(raw: Optional[str]) -> FrozenSet[Role]:
    by_name = {r.value.lower(): r for r in Role}
    out = set()
    for part in (raw or "").split(","):
        role = by_name.get(part.strip().lower())
        if role is not None:
            out.add(role)
    return frozenset(out)


def caller_from(user_id: str, roles: Iterable[Role], branch_id: Optional[str] = None,
                class_id: Optional[str] = None, staff_id: Optional[str] = None) -> Caller:
    return Caller(
        user_id=str(user_id),
        roles=frozenset(roles),
        branch_id=branch_id or None,
        class_id=class_id or None,
        staff_id=staff_id or None,
    )


# ------------------------------- scope rules ---------------------------------
def exam_admin_branch(caller: Caller) -> Optional[str]:
    """
    Branch an exam administrator may act on.
    Returns None for SuperAdmin (every branch). Raises ScopeError for anyone
    who may not create/edit/delete exams.
    """
    role = caller.primary_role
    if role is Role.SUPER_ADMIN:
        return None
    if role is Role.ADMIN:
        if not caller.branch_id:
            raise ScopeError("Admin not associated with a branch.")
        return caller.branch_id
    if role in (Role.TEACHER, Role.NEW_STUDENT, Role.STUDENT, Role.PARENT, None):
        raise ScopeError("Only Admin or SuperAdmin staff may manage exams.")
    raise ScopeError(f"Unhandled role {role!r}.")


def require_branch_access(caller: Caller, branch_id: str) -> None:
    scope = exam_admin_branch(caller)
    if scope is not None and scope != branch_id:
        raise ScopeError("You are not authorized to manage exams of another branch.")


def student_exam_kind(caller: Caller) -> str:
    """Regular students sit Internal exams; newly-enrolling students sit External ones."""
    role = caller.primary_role
    if role is Role.NEW_STUDENT:
        return EXTERNAL
    if role is Role.STUDENT:
        return INTERNAL
    if role in (Role.SUPER_ADMIN, Role.ADMIN, Role.TEACHER, Role.PARENT, None):
        raise ScopeError("Only students may sit exams.")
    raise ScopeError(f"Unhandled role {role!r}.")


def student_class(caller: Caller) -> str:
    student_exam_kind(caller)
    if not caller.class_id:
        raise NotFoundError("Student class not found.")
    return caller.class_id


def require_teacher(caller: Caller) -> str:
    if not caller.has(Role.TEACHER):
        raise ScopeError("Only class teachers may do this.")
    if not caller.staff_id:
        raise ScopeError("You are not registered as a staff member.")
    return caller.staff_id
