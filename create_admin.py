"""
Script to create the first super admin employee
Run: python create_admin.py <email> <name> <password>
"""
import sys
from app.database import SessionLocal, Base, engine
from app.models import Department, Employee, EmployeeRole, EmployeeStatus
from app.routers.auth import get_password_hash
from app.services.identifiers import generate_employee_id
from app.services.validation import normalize_email

def create_admin_user(email: str, name: str, password: str):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        email = normalize_email(email)
        existing = db.query(Employee).filter(Employee.email == email).first()

        if existing:
            print("Employee already exists!")
            if existing.role != EmployeeRole.SUPER_ADMIN:
                existing.role = EmployeeRole.SUPER_ADMIN
                existing.department = Department.ADMIN
                existing.status = EmployeeStatus.ACTIVE
                db.commit()
                print("Updated existing employee to super admin role.")
            return

        code = generate_employee_id()
        while db.query(Employee.id).filter(Employee.employee_code == code).first():
            code = generate_employee_id()

        admin = Employee(
            employee_code=code,
            email=email,
            name=name,
            hashed_password=get_password_hash(password),
            role=EmployeeRole.SUPER_ADMIN,
            department=Department.ADMIN,
            status=EmployeeStatus.ACTIVE,
        )
        db.add(admin)
        db.commit()
        db.refresh(admin)

        print("Super admin created successfully!")
        print(f"  Code: {admin.employee_code}")
        print(f"  Email: {admin.email}")
        print(f"  Role: {admin.role.value}")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

if __name__ == "__main__":
    if len(sys.argv) != 4:
        print("Usage: python create_admin.py <email> <name> <password>")
        sys.exit(1)
    create_admin_user(*sys.argv[1:])
