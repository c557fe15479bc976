from fastapi import APIRouter
from dynacrud.api.endpoints import csrf, entities

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(entities.router)
api_router.include_router(csrf.router)
