from fastapi import APIRouter
from utils import log

from .auth import router as auth_router
from .credits import router as credits_router
from .payments import router as payments_router
from .transactions import router as transactions_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(auth_router)
router.include_router(credits_router)
router.include_router(transactions_router)
router.include_router(payments_router)
