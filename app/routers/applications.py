"""
University application endpoints (admission department)
"""
from fastapi import APIRouter, Depends, UploadFile, File, status
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import List, Optional
from app.database import get_db
from app.models import Application, ApplicationStatus, SubjectKind
from app.routers.auth import get_current_principal
from app.schemas.crm import ApplicationOut, AuditEventOut
from app.services import audit_log, lifecycle_engine
from app.services.blob_store import BlobStore, get_blob_store
from app.services.principal import Principal

router = APIRouter()

class ApplicationCreate(BaseModel):
    university: str
    course: str
    intake: Optional[str] = None
    program_name: Optional[str] = None
    course_duration: Optional[str] = None
    tuition_fee: Optional[float] = None
    tuition_fee_currency: Optional[str] = None
    fees_structure: Optional[str] = None
    mode_of_attendance: Optional[str] = None
    start_date: Optional[str] = None
    campus_name: Optional[str] = None
    campus_address: Optional[str] = None
    admission_notes: Optional[str] = None
    assigned_to_id: Optional[int] = None

class ApplicationUpdate(BaseModel):
    university: Optional[str] = None
    course: Optional[str] = None
    intake: Optional[str] = None
    program_name: Optional[str] = None
    course_duration: Optional[str] = None
    tuition_fee: Optional[float] = None
    tuition_fee_currency: Optional[str] = None
    fees_structure: Optional[str] = None
    mode_of_attendance: Optional[str] = None
    start_date: Optional[str] = None
    campus_name: Optional[str] = None
    campus_address: Optional[str] = None
    admission_notes: Optional[str] = None
    assigned_to_id: Optional[int] = None
    status: Optional[ApplicationStatus] = None
    rejection_reason: Optional[str] = None  # Required for Rejected / Withdrawn

@router.get("/registration/{registration_id}", response_model=List[ApplicationOut])
def list_applications(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    registration = lifecycle_engine.get_registration(db, registration_id)
    return db.query(Application).filter(
        Application.registration_id == registration.id
    ).order_by(Application.created_at).all()

@router.post("/registration/{registration_id}", response_model=ApplicationOut, status_code=status.HTTP_201_CREATED)
def create_application(
    registration_id: int,
    data: ApplicationCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.create_application(db, principal, registration_id, data.model_dump(exclude_none=True))

@router.put("/{application_id}", response_model=ApplicationOut)
def update_application(
    application_id: int,
    data: ApplicationUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.update_application(db, principal, application_id, data.model_dump(exclude_unset=True))

@router.post("/{application_id}/offer-letter", response_model=ApplicationOut)
def upload_offer_letter(
    application_id: int,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Upload an offer letter; the application becomes Approved"""
    application = lifecycle_engine.get_application(db, application_id)
    key = blob_store.put(file.file.read(), file.filename, folder=f"offer_letters/{application.registration_id}")
    try:
        return lifecycle_engine.upload_offer_letter(db, principal, application_id, key, file.filename)
    except Exception:
        db.rollback()
        blob_store.delete(key)
        raise

@router.get("/{application_id}/audit", response_model=List[AuditEventOut])
def application_audit_trail(
    application_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return audit_log.events_for(db, SubjectKind.APPLICATION, application_id)
