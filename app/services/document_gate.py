"""
Per-entity documents with two-party verification.

Counsellor and Admission each record their own verdict; the combined status is
a pure function of the pair (see ``COMBINED_STATUS``). Admission is the final
authority: a counsellor verdict alone never makes a document VERIFIED, and a
rejection by either party makes it REJECTED.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from app.database import commit_or_conflict
from app.errors import BlobUnavailable, NotFound, OwnershipDenied, ValidationError
from app.models import (
    Document, DocumentStatus, LoanApplication, Owner, Registration, SubjectKind,
    VerificationParty, VerificationStatus,
)
from app.services import audit_log, notifier
from app.services.blob_store import BlobStore
from app.services.clock import Clock, utcnow
from app.services.principal import Principal
from app.services.validation import require

logger = logging.getLogger(__name__)

P, V, R = VerificationStatus.PENDING, VerificationStatus.VERIFIED, VerificationStatus.REJECTED

# (counsellor, admission) -> combined
COMBINED_STATUS = {
    (P, P): DocumentStatus.UPLOADED,
    (P, V): DocumentStatus.VERIFIED,
    (P, R): DocumentStatus.REJECTED,
    (V, P): DocumentStatus.UPLOADED,
    (V, V): DocumentStatus.VERIFIED,
    (V, R): DocumentStatus.REJECTED,
    (R, P): DocumentStatus.REJECTED,
    (R, V): DocumentStatus.REJECTED,
    (R, R): DocumentStatus.REJECTED,
}

DOCUMENT_SUBJECTS = (SubjectKind.REGISTRATION, SubjectKind.LOAN)


@dataclass
class Completeness:
    complete: bool
    missing: List[str] = field(default_factory=list)
    progress: int = 100


def combined_status(counsellor_status: Union[VerificationStatus, str],
                    admission_status: Union[VerificationStatus, str]) -> DocumentStatus:
    return COMBINED_STATUS[(VerificationStatus(counsellor_status), VerificationStatus(admission_status))]


def _subject_kind(subject_kind: Union[SubjectKind, str]) -> SubjectKind:
    try:
        kind = SubjectKind(subject_kind)
    except ValueError:
        raise ValidationError("invalid_subject_kind", {"subject_kind": subject_kind})
    if kind not in DOCUMENT_SUBJECTS:
        raise ValidationError("invalid_subject_kind", {"subject_kind": kind.value})
    return kind


def _subject(db: Session, kind: SubjectKind, subject_id: int):
    model = Registration if kind == SubjectKind.REGISTRATION else LoanApplication
    subject = db.query(model).filter(model.id == subject_id).first()
    if subject is None:
        raise NotFound(kind.value.lower(), subject_id)
    return subject


def ensure_can_modify(principal: Principal, kind: SubjectKind, subject) -> None:
    """Uploads, replacements and deletions belong to the department holding the subject (Admission always may)."""
    if principal.can_act_as(VerificationParty.ADMISSION):
        return
    owner = Owner.LOAN if kind == SubjectKind.LOAN else subject.acting_owner
    if not principal.can_own(owner):
        raise OwnershipDenied("department_mismatch", {"owner": owner.value})


def _student_contact(db: Session, document: Document) -> Optional[Registration]:
    if document.subject_kind == SubjectKind.REGISTRATION:
        return db.query(Registration).filter(Registration.id == document.subject_id).first()
    loan = db.query(LoanApplication).filter(LoanApplication.id == document.subject_id).first()
    return loan.registration if loan else None


def get_document(db: Session, document_id: int, lock: bool = False) -> Document:
    query = db.query(Document).filter(Document.id == document_id)
    if lock:
        query = query.with_for_update()
    document = query.first()
    if document is None:
        raise NotFound("document", document_id)
    return document


def upload(
    db: Session,
    principal: Principal,
    subject_kind: Union[SubjectKind, str],
    subject_id: int,
    doc_id: str,
    blob_path: str,
    file_name: Optional[str] = None,
    blob_store: Optional[BlobStore] = None,
    clock: Clock = utcnow,
) -> Document:
    """Create or replace the document ``doc_id`` of a subject. Replacing resets both verdicts."""
    kind = _subject_kind(subject_kind)
    doc_id = require(doc_id, "doc_id").strip()
    require(blob_path, "file_path")
    ensure_can_modify(principal, kind, _subject(db, kind, subject_id))

    now = clock()
    document = (
        db.query(Document)
        .filter(Document.subject_kind == kind, Document.subject_id == subject_id, Document.doc_id == doc_id)
        .with_for_update()
        .first()
    )
    replaced_path = None
    if document is None:
        document = Document(subject_kind=kind, subject_id=subject_id, doc_id=doc_id)
        db.add(document)
    else:
        replaced_path = document.file_path if document.file_path != blob_path else None

    document.file_path = blob_path
    document.file_name = file_name
    document.status = DocumentStatus.UPLOADED
    document.counsellor_status = VerificationStatus.PENDING
    document.counsellor_by_id = None
    document.counsellor_at = None
    document.counsellor_remarks = None
    document.admission_status = VerificationStatus.PENDING
    document.admission_by_id = None
    document.admission_at = None
    document.admission_remarks = None
    document.uploaded_by_id = principal.actor_id
    document.uploaded_at = now
    document.updated_at = now
    commit_or_conflict(db)
    db.refresh(document)

    if replaced_path and blob_store is not None:
        blob_store.delete(replaced_path)

    audit_log.record(db, principal.actor_id, "DOCUMENT_UPLOADED", SubjectKind.DOCUMENT, document.id, {
        "subject_kind": kind.value,
        "subject_id": subject_id,
        "doc_id": doc_id,
        "replaced": replaced_path is not None,
    }, clock=clock)
    return document


def upload_file(
    db: Session,
    principal: Principal,
    blob_store: BlobStore,
    subject_kind: Union[SubjectKind, str],
    subject_id: int,
    doc_id: str,
    data: bytes,
    filename: str,
    clock: Clock = utcnow,
) -> Document:
    """Store the bytes, then record the document. The new blob is removed if recording fails."""
    kind = _subject_kind(subject_kind)
    key = blob_store.put(data, filename, folder=f"{kind.value.lower()}/{subject_id}")
    try:
        return upload(db, principal, kind, subject_id, doc_id, key, filename, blob_store=blob_store, clock=clock)
    except Exception:
        db.rollback()
        blob_store.delete(key)
        raise


def verify(
    db: Session,
    principal: Principal,
    document_id: int,
    party: Union[VerificationParty, str],
    decision: Union[VerificationStatus, str],
    remarks: Optional[str] = None,
    clock: Clock = utcnow,
) -> Document:
    try:
        party = VerificationParty(party)
        decision = VerificationStatus(decision)
    except ValueError:
        raise ValidationError("invalid_verification", {"party": party, "decision": decision})
    if decision == VerificationStatus.PENDING:
        raise ValidationError("invalid_verification", {"decision": decision.value})
    if not principal.can_act_as(party):
        raise OwnershipDenied("cannot_verify_as_party", {"party": party.value})

    document = get_document(db, document_id, lock=True)
    now = clock()
    if party == VerificationParty.COUNSELLOR:
        document.counsellor_status = decision
        document.counsellor_by_id = principal.actor_id
        document.counsellor_at = now
        document.counsellor_remarks = remarks
    else:
        document.admission_status = decision
        document.admission_by_id = principal.actor_id
        document.admission_at = now
        document.admission_remarks = remarks
    document.status = combined_status(document.counsellor_status, document.admission_status)
    document.updated_at = now
    commit_or_conflict(db)
    db.refresh(document)

    action = "DOCUMENT_VERIFIED" if decision == VerificationStatus.VERIFIED else "DOCUMENT_REJECTED"
    audit_log.record(db, principal.actor_id, action, SubjectKind.DOCUMENT, document.id, {
        "party": party.value,
        "doc_id": document.doc_id,
        "combined": document.status.value,
        "remarks": remarks,
    }, clock=clock)

    if decision == VerificationStatus.REJECTED:
        student = _student_contact(db, document)
        if student is not None:
            notifier.notify(db, notifier.DOCUMENT_REJECTED, student.email, {
                "name": student.name,
                "doc_id": document.doc_id,
                "remarks": remarks or "",
            })
    return document


def completeness(db: Session, subject_kind: Union[SubjectKind, str], subject_id: int,
                 required: Iterable[str]) -> Completeness:
    """Complete iff every required doc exists with combined status VERIFIED."""
    kind = _subject_kind(subject_kind)
    required = list(dict.fromkeys(required))
    if not required:
        return Completeness(complete=True, missing=[], progress=100)

    verified = {
        doc_id for (doc_id,) in db.query(Document.doc_id).filter(
            Document.subject_kind == kind,
            Document.subject_id == subject_id,
            Document.status == DocumentStatus.VERIFIED,
        )
    }
    missing = [doc_id for doc_id in required if doc_id not in verified]
    progress = round(100 * (len(required) - len(missing)) / len(required))
    return Completeness(complete=not missing, missing=missing, progress=progress)


def list_documents(db: Session, subject_kind: Union[SubjectKind, str], subject_id: int,
                   blob_store: Optional[BlobStore] = None) -> List[Dict[str, Any]]:
    kind = _subject_kind(subject_kind)
    documents = (
        db.query(Document)
        .filter(Document.subject_kind == kind, Document.subject_id == subject_id)
        .order_by(Document.doc_id)
        .all()
    )
    result = []
    for document in documents:
        signed_url = None
        if blob_store is not None:
            try:
                signed_url = blob_store.sign(document.file_path)
            except BlobUnavailable as e:
                logger.warning("Could not sign %s: %s", document.file_path, e)
        result.append({
            "id": document.id,
            "doc_id": document.doc_id,
            "file_name": document.file_name,
            "status": document.status.value,
            "counsellor": {
                "status": document.counsellor_status.value,
                "by": document.counsellor_by_id,
                "at": document.counsellor_at,
                "remarks": document.counsellor_remarks,
            },
            "admission": {
                "status": document.admission_status.value,
                "by": document.admission_by_id,
                "at": document.admission_at,
                "remarks": document.admission_remarks,
            },
            "uploaded_at": document.uploaded_at,
            "url": signed_url,
        })
    return result


def delete_document(db: Session, principal: Principal, document_id: int,
                    blob_store: Optional[BlobStore] = None, clock: Clock = utcnow) -> None:
    document = get_document(db, document_id, lock=True)
    ensure_can_modify(principal, document.subject_kind, _subject(db, document.subject_kind, document.subject_id))
    path = document.file_path
    metadata = {
        "subject_kind": document.subject_kind.value,
        "subject_id": document.subject_id,
        "doc_id": document.doc_id,
    }
    db.delete(document)
    commit_or_conflict(db)

    if blob_store is not None:
        blob_store.delete(path)
    audit_log.record(db, principal.actor_id, "DOCUMENT_DELETED", SubjectKind.DOCUMENT, document_id, metadata, clock=clock)


def delete_subject_documents(db: Session, subject_kind: SubjectKind, subject_id: int) -> List[str]:
    """Remove every document row of a subject (caller commits). Returns the blob paths."""
    documents = db.query(Document).filter(Document.subject_kind == subject_kind, Document.subject_id == subject_id).all()
    paths = [d.file_path for d in documents]
    for document in documents:
        db.delete(document)
    return paths
