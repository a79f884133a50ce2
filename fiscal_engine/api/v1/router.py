from fastapi import APIRouter

from fiscal_engine.api.v1.endpoints import documents, saft

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(documents.router, prefix="/documents", tags=["Fiscal Documents"])
api_router.include_router(saft.router, prefix="/saft", tags=["SAF-T"])
