# app/utils/auth.py
from fastapi import Depends
from fastapi.security import APIKeyHeader
from utils.exceptions import InvalidAPIKeyException
from config import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

async def verify_api_key(api_key: str = Depends(api_key_header)) -> str:
    if not api_key or not settings.API_KEY or api_key != settings.API_KEY:
        raise InvalidAPIKeyException()
    return api_key
