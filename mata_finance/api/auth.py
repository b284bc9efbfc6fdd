"""
Mata Finance — Authentication utilities.

Bearer JWT tokens carry the user id (``sub``) and the login session id
(``sid``). Every request reloads the user and checks that the session id
still matches, so logging in elsewhere revokes older tokens. The role used
for authorization always comes from the user row.

Credential checks (passwords, SSO) happen in front of this service, so
there is no login route. A trusted caller with store access issues a
token through ``start_session``, e.g. from the command line:

    mata-finance-token <user-id>
"""

from __future__ import annotations

import argparse
import secrets
import sys
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from mata_finance.config import settings
from mata_finance.domain.schema import Actor, Role
from mata_finance.store.database import Database
from mata_finance.store.models import UserDB

security = HTTPBearer(auto_error=False)


def new_session_id() -> str:
    return secrets.token_hex(16)


def create_access_token(user_id: UUID, session_id: str) -> str:
    """Create a signed token bound to one login session."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    to_encode = {"sub": str(user_id), "sid": session_id, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def start_session(database: Database, user_id: UUID) -> str:
    """Rotate the user's login session and return a token for it."""
    session_id = new_session_id()
    with database.session() as session:
        user = session.get(UserDB, user_id)
        if user is None or not user.is_active:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
        user.login_id = session_id
    return create_access_token(user_id, session_id)


def resolve_actor(database: Database, token: str) -> Actor:
    """Validate a token against the user table and build the caller context."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if payload is None or payload.get("sub") is None:
        raise credentials_exception
    try:
        user_id = UUID(payload["sub"])
    except ValueError:
        raise credentials_exception

    with database.session() as session:
        user = session.get(UserDB, user_id)
        if user is None or not user.is_active:
            raise credentials_exception
        if user.login_id is None or user.login_id != payload.get("sid"):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session is no longer valid",
                headers={"WWW-Authenticate": "Bearer"},
            )
        try:
            role = Role(user.role)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Unsupported role"
            )
        return Actor(user_id=user.id, role=role)


def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    """FastAPI dependency: the authenticated caller."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return resolve_actor(request.app.state.services.database, credentials.credentials)


def require_role(role: Role):
    """Dependency factory rejecting callers of any other role with 403."""

    def checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role '{role.value}'",
            )
        return actor

    return checker


require_admin = require_role(Role.ADMIN)
require_approver = require_role(Role.APPROVER)


def main(argv: list[str] | None = None) -> None:
    """Print a fresh token for one user, revoking their earlier sessions."""
    parser = argparse.ArgumentParser(description="Issue a Mata Finance API token")
    parser.add_argument("user_id", type=UUID)
    parser.add_argument("--database-url", help="defaults to the configured store")
    args = parser.parse_args(argv)

    database = Database(args.database_url or settings.database_url_sync)
    try:
        token = start_session(database, args.user_id)
    except HTTPException as exc:
        print(exc.detail, file=sys.stderr)
        sys.exit(1)
    finally:
        database.dispose()
    print(token)


if __name__ == "__main__":
    main()
