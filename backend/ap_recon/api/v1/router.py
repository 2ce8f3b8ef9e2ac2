from fastapi import APIRouter

from ap_recon.api.v1 import audit, claims, exceptions, invoices, match, staleness

api_router = APIRouter()

api_router.include_router(audit.router, prefix="/audit", tags=["audit"])
api_router.include_router(match.router, tags=["match"])
api_router.include_router(claims.router, prefix="/claims", tags=["claims"])
api_router.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
api_router.include_router(exceptions.router, tags=["exceptions"])
api_router.include_router(staleness.router, prefix="/staleness", tags=["staleness"])
