"""
gateway/authorization.py -- Role hierarchy plus tenant/resource scoping.

Two stages, always in this order:

  1. Rank check. Every Action declares the minimum role rank it needs
     (ACTION_RANK). A principal whose role rank is lower is refused before
     any resource is loaded. Higher ranks always pass what lower ranks pass.

  2. Scoping, only when a ResourceRef is supplied:
       sys_admin     bypasses scoping. A missing school or student is 404.
       school_admin  must be listed in the school's admins.
       instructor    must be listed in the school's instructors.
       student       must belong to the school (session school_id) and, for a
                     single student record, own it (record.user_id).

Cross-tenant policy: for every role except sys_admin, a school or student
that does not exist is refused exactly like one that belongs to another
tenant (403). Only sys_admin, who could see it anyway, learns that a
resource is absent.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from gateway.errors import Rejection, forbidden, not_found
from gateway.models import Principal, Role, School, Student
from gateway.store import CredentialStore


class Action(str, Enum):
    school_read = "school:read"
    school_update = "school:update"
    school_create = "school:create"
    student_list = "student:list"
    student_read = "student:read"
    student_update = "student:update"
    student_create = "student:create"
    student_delete = "student:delete"
    flight_log_write = "flight_log:write"
    api_key_manage = "api_key:manage"

    @property
    def required_rank(self) -> int:
        return ACTION_RANK[self]


ACTION_RANK: dict[Action, int] = {
    Action.school_read: Role.student.rank,
    Action.school_update: Role.school_admin.rank,
    Action.school_create: Role.sys_admin.rank,
    Action.student_list: Role.instructor.rank,
    Action.student_read: Role.student.rank,
    Action.student_update: Role.student.rank,
    Action.student_create: Role.school_admin.rank,
    Action.student_delete: Role.school_admin.rank,
    Action.flight_log_write: Role.instructor.rank,
    Action.api_key_manage: Role.school_admin.rank,
}


class ResourceKind(str, Enum):
    school = "school"
    student = "student"


@dataclass(frozen=True)
class ResourceRef:
    """Names the target of an action. student_id is set for single-record access."""

    kind: ResourceKind
    school_id: int
    student_id: int | None = None

    @classmethod
    def school(cls, school_id: int) -> ResourceRef:
        return cls(ResourceKind.school, school_id)

    @classmethod
    def student(cls, school_id: int, student_id: int) -> ResourceRef:
        return cls(ResourceKind.student, school_id, student_id)


class AuthorizationResolver:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def authorize(self, principal: Principal, action: Action, resource: ResourceRef | None = None) -> Rejection | None:
        """Return None when allowed, a 403/404 Rejection otherwise."""
        if principal.role.rank < action.required_rank:
            return forbidden("rank_insufficient")
        if resource is None:
            return None

        school = self._store.find_school_by_id(resource.school_id)
        student = None
        if resource.student_id is not None:
            student = self._store.find_student_by_id(resource.student_id)

        if principal.role is Role.sys_admin:
            if school is None:
                return not_found("school_missing")
            if resource.student_id is not None and not _belongs(student, school):
                return not_found("student_missing")
            return None

        if school is None:
            return forbidden("school_out_of_scope")
        if not _member_of(principal, school):
            return forbidden("school_out_of_scope")

        if resource.student_id is not None:
            if not _belongs(student, school):
                return forbidden("student_out_of_scope")
            if principal.role is Role.student and student.user_id != principal.user_id:
                return forbidden("student_not_owner")
        return None


def _member_of(principal: Principal, school: School) -> bool:
    if principal.role is Role.school_admin:
        return principal.user_id in school.admins
    if principal.role is Role.instructor:
        return principal.user_id in school.instructors
    if principal.role is Role.student:
        return principal.school_id is not None and principal.school_id == school.id
    return False


def _belongs(student: Student | None, school: School) -> bool:
    return student is not None and student.school_id == school.id
