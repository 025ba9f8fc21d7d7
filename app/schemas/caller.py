"""
The authenticated caller, as handed over by the identity layer
"""
from pydantic import BaseModel
from typing import Literal
from uuid import UUID


Role = Literal["teacher", "admin", "student", "parent"]

PRIVILEGED_ROLES = ("teacher", "admin")


class Caller(BaseModel):
    user_id: UUID
    role: Role
    school_id: UUID

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def is_student(self) -> bool:
        return self.role == "student"
