from fastapi import APIRouter

from shule.modules.auth.router import router as auth_router
from shule.modules.schools.router import router as schools_router

api_router = APIRouter()

api_router.include_router(auth_router, prefix="/auth", tags=["Authentication"])

api_router.include_router(schools_router, prefix="/schools", tags=["Schools"])
