from fastapi import APIRouter
from app.api.endpoints import auth, conversations, query

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(auth.router)
api_router.include_router(query.router)
api_router.include_router(conversations.router)
