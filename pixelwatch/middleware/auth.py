"""
Workspace API key authentication.

Every workspace gets one or more API keys (pw_...). A key resolves to
exactly one workspace; every route scopes its reads and writes to that
workspace through pixel ownership.

Key rules:
  - Keys are hashed (SHA-256) in the database, never stored in plaintext
  - Deactivated keys are rejected
  - The raw key is shown once, at creation
"""

import hashlib
import secrets
from dataclasses import dataclass
from uuid import UUID, uuid4

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Uuid, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelwatch.core.clock import utcnow
from pixelwatch.models.database import get_db
from pixelwatch.models.tables import Base

import structlog

logger = structlog.get_logger()

KEY_PREFIX = "pw_"


# ─── Database model ────────────────────────────────────────────────

class ApiKey(Base):
    """Hashed API keys scoped to a workspace."""
    __tablename__ = "api_keys"

    id = Column(Uuid, primary_key=True, default=uuid4)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    key_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256 hex
    key_prefix = Column(String(12), nullable=False)  # e.g. "pw_a3f8Xk2Q" for identification
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ─── Key generation ────────────────────────────────────────────────

def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> tuple[str, str]:
    """Returns (raw_key, key_hash)."""
    raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_key, hash_key(raw_key)


async def create_api_key(db: AsyncSession, workspace_id: UUID, name: str | None = None) -> str:
    """Persist a new key for the workspace and return the raw key. Caller commits."""
    raw_key, key_hash = generate_api_key()
    db.add(ApiKey(workspace_id=workspace_id, key_hash=key_hash, key_prefix=raw_key[:12], name=name))
    return raw_key


# ─── Auth dependency ───────────────────────────────────────────────

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class AuthContext:
    """Resolved workspace scope for the current request."""
    workspace_id: UUID
    key_id: UUID


async def _resolve_key(raw_key: str | None, db: AsyncSession) -> AuthContext:
    if not raw_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Include X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    result = await db.execute(
        select(ApiKey).where(ApiKey.key_hash == hash_key(raw_key), ApiKey.is_active.is_(True))
    )
    api_key = result.scalar_one_or_none()
    if api_key is None:
        logger.warning("api_key_rejected", key_prefix=raw_key[:12])
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    api_key.last_used_at = utcnow()
    await db.commit()

    return AuthContext(workspace_id=api_key.workspace_id, key_id=api_key.id)


async def require_auth(
    api_key: str | None = Security(api_key_header),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Require a valid workspace API key."""
    return await _resolve_key(api_key, db)
