"""Chats domain - Doctor/patient threads, messaging policy and the realtime gateway"""

from .gateway import router as gateway_router
from .router import router

__all__ = ["router", "gateway_router"]
