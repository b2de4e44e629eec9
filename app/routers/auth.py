from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr
from jose import JWTError, jwt
from datetime import timedelta
from typing import Optional
import bcrypt
import logging
from app.database import get_db
from app.models import Employee, EmployeeRole, EmployeeStatus, Department
from app.config import settings
from app.errors import OwnershipDenied, ValidationError
from app.services.clock import utcnow
from app.services.identifiers import generate_employee_id
from app.services.principal import ROLE_DEPARTMENTS, Principal
from app.services.validation import normalize_email, ensure_email_available

logger = logging.getLogger(__name__)

router = APIRouter()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

class EmployeeCreate(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: str
    department: Optional[Department] = None
    phone: Optional[str] = None

class Token(BaseModel):
    access_token: str
    token_type: str
    user: dict

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password using bcrypt"""
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except (ValueError, AttributeError):
        return False

def get_password_hash(password: str) -> str:
    """Hash password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    # 'sub' must be a string
    if "sub" in to_encode and not isinstance(to_encode["sub"], str):
        to_encode["sub"] = str(to_encode["sub"])
    expire = utcnow() + (expires_delta or timedelta(hours=settings.ACCESS_TOKEN_HOURS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

def get_current_employee(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> Employee:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        employee_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError) as e:
        logger.warning("Rejected access token: %s", e)
        raise credentials_exception

    employee = db.query(Employee).filter(Employee.id == employee_id).first()
    if employee is None or employee.status != EmployeeStatus.ACTIVE:
        raise credentials_exception
    return employee

def get_current_principal(employee: Employee = Depends(get_current_employee)) -> Principal:
    return Principal.from_employee(employee)

def _user_dict(employee: Employee) -> dict:
    return {
        "id": employee.id,
        "employee_code": employee.employee_code,
        "email": employee.email,
        "name": employee.name,
        "role": employee.role.value,
        "department": employee.department.value if employee.department else None,
    }

@router.post("/login", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """Employee login"""
    employee = db.query(Employee).filter(Employee.email == normalize_email(form_data.username)).first()
    if not employee or not employee.hashed_password or not verify_password(form_data.password, employee.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if employee.status != EmployeeStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")

    access_token = create_access_token(data={"sub": employee.id})
    return Token(access_token=access_token, token_type="bearer", user=_user_dict(employee))

@router.get("/me")
async def get_current_user_info(employee: Employee = Depends(get_current_employee)):
    """Get current employee information"""
    principal = Principal.from_employee(employee)
    info = _user_dict(employee)
    info["capabilities"] = sorted(principal.capabilities)
    return info

@router.post("/employees", status_code=status.HTTP_201_CREATED)
async def create_employee(
    data: EmployeeCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Create an employee (super admin only)"""
    if not principal.is_global_admin:
        raise OwnershipDenied("admin_only")

    role = EmployeeRole.canonicalize(data.role)
    if role is None:
        raise ValidationError("unknown_role", {"role": data.role})

    email = ensure_email_available(db, data.email, actor_id=principal.actor_id)

    employee_code = generate_employee_id()
    while db.query(Employee).filter(Employee.employee_code == employee_code).first():
        employee_code = generate_employee_id()

    employee = Employee(
        employee_code=employee_code,
        name=data.name.strip(),
        email=email,
        phone=data.phone,
        hashed_password=get_password_hash(data.password),
        role=role,
        department=data.department or ROLE_DEPARTMENTS[role],
        status=EmployeeStatus.ACTIVE,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    logger.info("Employee %s created by %s", employee.employee_code, principal.actor_id)
    return _user_dict(employee)
