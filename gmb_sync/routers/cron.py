"""
Endpoints appelés par le scheduler (Authorization: Bearer <CRON_SECRET>)
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies.auth import require_cron_secret
from ..services.retention import sweep_expired_archives

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.get("/cleanup", dependencies=[Depends(require_cron_secret)])
def cleanup(db: Session = Depends(get_db)):
    """Purge quotidienne des archives dont la rétention est expirée"""
    return sweep_expired_archives(db)
