import uuid
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..schemas.activity import ActivityLogResponse
from ..schemas.jobs import JobCreate, JobEnvelope, JobFromQuote, JobResponse
from ..schemas.quotes import StatusUpdate
from ..services.activity import get_activity
from ..services.conversion import convert_quote_to_job
from ..services.documents import create_job, delete_job, get_job
from ..services.transitions import validator


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=201)
def create(payload: JobCreate, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    return create_job(db, payload, user)


@router.post("/from-quote", response_model=JobEnvelope, status_code=201)
def from_quote(payload: JobFromQuote, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    """Create the job for an accepted quote. Repeat calls answer 409 with existing_job_id."""
    job = convert_quote_to_job(db, payload.quote_id, user, schedule=payload)
    return JobEnvelope(job=JobResponse.model_validate(job), message=f"Job {job.job_number} created from quote")


@router.get("/{job_id}", response_model=JobResponse)
def read(job_id: uuid.UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return get_job(db, job_id, user.org_id)


@router.patch("/{job_id}/status", response_model=JobResponse)
def update_status(
    job_id: uuid.UUID,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office", "field")),
):
    job = get_job(db, job_id, user.org_id)
    validator.apply_transition(db, job, payload.status, actor=user)
    db.commit()
    db.refresh(job)
    return job


@router.delete("/{job_id}")
def delete(job_id: uuid.UUID, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    job = get_job(db, job_id, user.org_id)
    delete_job(db, job)
    return {"message": "Job deleted successfully"}


@router.get("/{job_id}/activity", response_model=List[ActivityLogResponse])
def activity(
    job_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    get_job(db, job_id, user.org_id)
    return get_activity(db, "job", job_id, limit=limit, offset=offset)
