from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Union

from app.models import Department, Employee, EmployeeRole, Owner, VerificationParty

GLOBAL_ADMIN = "GLOBAL_ADMIN"
PURGE = "PURGE"
MANAGE_LEADS = "MANAGE_LEADS"

ROLE_CAPABILITIES = {
    EmployeeRole.SUPER_ADMIN: frozenset({GLOBAL_ADMIN, PURGE, MANAGE_LEADS}),
    EmployeeRole.ADMISSION_ADMIN: frozenset({MANAGE_LEADS}),
    EmployeeRole.COUNSELLING_ADMIN: frozenset({MANAGE_LEADS}),
    EmployeeRole.WFH_ADMIN: frozenset({MANAGE_LEADS}),
}

ROLE_DEPARTMENTS = {
    EmployeeRole.SUPER_ADMIN: Department.ADMIN,
    EmployeeRole.ADMISSION_ADMIN: Department.ADMISSION,
    EmployeeRole.COUNSELLING_ADMIN: Department.COUNSELLOR,
    EmployeeRole.WFH_ADMIN: Department.WFH,
    EmployeeRole.COUNSELLOR: Department.COUNSELLOR,
    EmployeeRole.WFH: Department.WFH,
    EmployeeRole.ADMISSION: Department.ADMISSION,
    EmployeeRole.LOAN_OFFICER: Department.LOAN,
}

# Departments allowed to act while a registration sits with each owner
OWNER_DEPARTMENTS = {
    Owner.COUNSELLOR: frozenset({Department.COUNSELLOR, Department.WFH}),
    Owner.ADMISSION: frozenset({Department.ADMISSION}),
    Owner.LOAN: frozenset({Department.LOAN, Department.ADMISSION}),
}

PARTY_DEPARTMENTS = {
    VerificationParty.COUNSELLOR: frozenset({Department.COUNSELLOR, Department.WFH}),
    VerificationParty.ADMISSION: frozenset({Department.ADMISSION}),
}


@dataclass(frozen=True)
class Principal:
    """The authenticated employee an operation runs on behalf of."""

    actor_id: int
    name: str
    role: EmployeeRole
    department: Optional[Department] = None
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_employee(cls, employee: Employee) -> "Principal":
        role = employee.role
        if not isinstance(role, EmployeeRole):
            role = EmployeeRole.canonicalize(role) or EmployeeRole.COUNSELLOR
        return cls(
            actor_id=employee.id,
            name=employee.name,
            role=role,
            department=employee.department or ROLE_DEPARTMENTS.get(role),
            capabilities=ROLE_CAPABILITIES.get(role, frozenset()),
        )

    def has(self, capability: str) -> bool:
        return capability in self.capabilities

    @property
    def is_global_admin(self) -> bool:
        return self.has(GLOBAL_ADMIN)

    def can_own(self, owner: Union[Owner, str]) -> bool:
        if self.is_global_admin:
            return True
        return self.department in OWNER_DEPARTMENTS.get(Owner(owner), frozenset())

    def can_act_as(self, party: Union[VerificationParty, str]) -> bool:
        if self.is_global_admin:
            return True
        return self.department in PARTY_DEPARTMENTS.get(VerificationParty(party), frozenset())

    def can_purge(self) -> bool:
        return self.has(PURGE)

    def can_manage_leads(self) -> bool:
        return self.has(MANAGE_LEADS)
