from fastapi import APIRouter
from app.api.endpoints import chat, profile

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(profile.router)
api_router.include_router(chat.router)
