from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from docledger.core.auth import REVIEW_ROLES, CurrentUser, require_roles
from docledger.core.dependencies import get_db
from docledger.schemas.document import BatchReclassifyRequest, BatchReclassifyResponse
from docledger.services.batch_service import batch_reclassify

router = APIRouter()


@router.post("/batch/reclassify", response_model=BatchReclassifyResponse)
def reclassify(
    payload: BatchReclassifyRequest,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    return batch_reclassify(db, payload, actor_id=current_user.id)
