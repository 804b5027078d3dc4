import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .models import User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from the API bearer token"""

    if not credentials or not credentials.credentials:
        logger.error("❌ No credentials provided")
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    user = db.query(User).filter(User.api_token == credentials.credentials).first()
    if not user:
        logger.warning("⚠️ Authentication failed: unknown API token")
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    return user
