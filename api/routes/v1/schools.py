"""
api/routes/v1/schools.py -- Tenant-scoped school and student endpoints.

Routes:
  GET /api/v1/schools/{school_id}                         -- school summary
  GET /api/v1/schools/{school_id}/students                -- students of a school
  GET /api/v1/schools/{school_id}/students/{student_id}   -- one student record
  PUT /api/v1/schools/{school_id}/students/{student_id}   -- update a student record

Every route runs the full gateway pipeline. GETs under /api/v1/schools/ are
CSRF protected as well (listing endpoints leak tenant data). Scoping is done
by the authorization resolver from the path ids; handlers only fetch and map.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import SchoolResponse, StudentResponse, StudentUpdate
from gateway.authorization import Action
from gateway.dependencies import reject, require, school_from_path, student_from_path
from gateway.errors import not_found
from gateway.models import Principal, Student
from gateway.store import CredentialStore

router = APIRouter()


def _student_response(student: Student) -> StudentResponse:
    return StudentResponse(id=student.id, school_id=student.school_id, user_id=student.user_id, name=student.name)


@router.get("/schools/{school_id}", response_model=SchoolResponse)
def get_school(
    request: Request,
    school_id: int,
    principal: Principal = Depends(require(Action.school_read, school_from_path)),
) -> SchoolResponse:
    store: CredentialStore = request.app.state.credential_store
    school = store.find_school_by_id(school_id)
    if school is None:
        raise reject(request, not_found("school_missing"), principal.user_id)
    return SchoolResponse(id=school.id, name=school.name)


@router.get("/schools/{school_id}/students", response_model=list[StudentResponse])
def list_students(
    request: Request,
    school_id: int,
    principal: Principal = Depends(require(Action.student_list, school_from_path)),
) -> list[StudentResponse]:
    """Students of the school. Instructors and above only."""
    store: CredentialStore = request.app.state.credential_store
    return [_student_response(s) for s in store.list_students(school_id)]


@router.get("/schools/{school_id}/students/{student_id}", response_model=StudentResponse)
def get_student(
    request: Request,
    school_id: int,
    student_id: int,
    principal: Principal = Depends(require(Action.student_read, student_from_path)),
) -> StudentResponse:
    """A student may only read the record they own."""
    store: CredentialStore = request.app.state.credential_store
    student = store.find_student_by_id(student_id)
    if student is None:
        raise reject(request, not_found("student_missing"), principal.user_id)
    return _student_response(student)


@router.put("/schools/{school_id}/students/{student_id}", response_model=StudentResponse)
def update_student(
    request: Request,
    school_id: int,
    student_id: int,
    body: StudentUpdate,
    principal: Principal = Depends(require(Action.student_update, student_from_path)),
) -> StudentResponse:
    store: CredentialStore = request.app.state.credential_store
    store.update_student(student_id, name=body.name)
    student = store.find_student_by_id(student_id)
    if student is None:
        raise reject(request, not_found("student_missing"), principal.user_id)
    return _student_response(student)
