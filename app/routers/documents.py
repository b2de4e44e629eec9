"""
Registration and loan documents: upload, two-party verification, completeness
"""
from fastapi import APIRouter, Depends, UploadFile, File, Form, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime
from app.config import settings
from app.database import get_db
from app.models import DocumentStatus, SubjectKind, VerificationParty, VerificationStatus
from app.routers.auth import get_current_principal
from app.schemas.crm import AuditEventOut, ORMModel
from app.services import audit_log, document_gate
from app.services.blob_store import BlobStore, get_blob_store, get_optional_blob_store
from app.services.principal import Principal

router = APIRouter()

class DocumentOut(ORMModel):
    id: int
    subject_kind: SubjectKind
    subject_id: int
    doc_id: str
    file_name: Optional[str] = None
    status: DocumentStatus
    counsellor_status: VerificationStatus
    admission_status: VerificationStatus
    uploaded_at: Optional[datetime] = None

class VerifyRequest(BaseModel):
    party: VerificationParty
    decision: VerificationStatus
    remarks: Optional[str] = None

class CompletenessOut(BaseModel):
    complete: bool
    missing: List[str]
    progress: int

@router.post("/upload", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
def upload_document(
    subject_kind: SubjectKind = Form(...),
    subject_id: int = Form(...),
    doc_id: str = Form(...),
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Upload or replace a document; replacing resets both verdicts"""
    return document_gate.upload_file(
        db, principal, blob_store, subject_kind, subject_id, doc_id, file.file.read(), file.filename,
    )

@router.get("/{document_id}/audit", response_model=List[AuditEventOut])
def document_audit_trail(
    document_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return audit_log.events_for(db, SubjectKind.DOCUMENT, document_id)

@router.get("/{subject_kind}/{subject_id}")
def list_documents(
    subject_kind: SubjectKind,
    subject_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    blob_store: Optional[BlobStore] = Depends(get_optional_blob_store),
) -> List[Dict[str, Any]]:
    return document_gate.list_documents(db, subject_kind, subject_id, blob_store=blob_store)

@router.get("/{subject_kind}/{subject_id}/completeness", response_model=CompletenessOut)
def document_completeness(
    subject_kind: SubjectKind,
    subject_id: int,
    required: Optional[List[str]] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Completeness against ``required`` (defaults to the counsellor document set)"""
    if required is None:
        required = settings.COUNSELLOR_REQUIRED_DOCS
    result = document_gate.completeness(db, subject_kind, subject_id, required)
    return CompletenessOut(complete=result.complete, missing=result.missing, progress=result.progress)

@router.post("/{document_id}/verify", response_model=DocumentOut)
def verify_document(
    document_id: int,
    data: VerifyRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return document_gate.verify(db, principal, document_id, data.party, data.decision, data.remarks)

@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(
    document_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    blob_store: Optional[BlobStore] = Depends(get_optional_blob_store),
):
    document_gate.delete_document(db, principal, document_id, blob_store=blob_store)
