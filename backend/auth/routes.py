"""
User and authentication API endpoints.

This module provides REST API endpoints for:
- User registration (returns an access token straight away)
- Login by username or email
- Reading the current user and other users
- The caller's pending invitations and login history
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

import schemas
from database import get_db, run_transaction
from errors import Conflict, Forbidden, Unauthorized
from ids import generate_id
from models import User, Project, ProjectMember, LoginHistory
from auth.security import hash_password, verify_password, issue_token
from auth.dependencies import get_current_user, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("/register", response_model=schemas.TokenResponse, status_code=status.HTTP_201_CREATED)
def register(request: schemas.UserCreate, db: Session = Depends(get_db)):
    """
    Register a new user account.

    Returns:
        The created user and an access token for it

    Raises:
        Conflict: 409 if the username or email is already taken
    """
    logger.info(f"Registration attempt for username: {request.username}")

    def create_user():
        existing_user = db.query(User).filter(
            or_(User.username == request.username, User.email == request.email)
        ).first()
        if existing_user:
            logger.info(f"Registration failed: username or email already exists: {request.username}")
            raise Conflict("Username or email already registered")

        new_user = User(
            id=generate_id(db, User),
            username=request.username,
            email=request.email,
            password_hash=hash_password(request.password),
        )
        db.add(new_user)
        db.flush()
        return new_user

    new_user = run_transaction(db, create_user)

    logger.critical(f"User registered successfully: {new_user.username} (ID: {new_user.id})")
    return {"access_token": issue_token(new_user.id), "user": new_user}


@router.post("/login", response_model=schemas.TokenResponse)
def login(request: schemas.UserLogin, db: Session = Depends(get_db)):
    """
    Login with username or email and password.

    Each successful login is recorded in the user's login history.

    Raises:
        Unauthorized: 401 for an unknown user or a wrong password (indistinguishable)
    """
    logger.info(f"Login attempt for: {request.username}")

    def authenticate():
        user = db.query(User).filter(
            or_(User.username == request.username, User.email == request.username)
        ).first()

        if not user or not verify_password(request.password, user.password_hash):
            logger.info(f"Login failed for: {request.username}")
            raise Unauthorized()

        db.add(LoginHistory(id=generate_id(db, LoginHistory), user_id=user.id))
        db.flush()
        return user

    user = run_transaction(db, authenticate)

    logger.info(f"User {user.id} logged in")
    return {"access_token": issue_token(user.id), "user": user}


@router.get("", response_model=schemas.UserWithEmail)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get the authenticated user's own profile."""
    logger.debug(f"User {current_user.id} fetching own profile")
    return current_user


@router.get("/me/invitations", response_model=List[schemas.Invitation])
def list_invitations(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """List projects the caller has been invited to but has not yet joined."""
    logger.debug(f"User {user_id} listing pending invitations")

    rows = (
        db.query(ProjectMember, Project)
        .join(Project, Project.id == ProjectMember.project_id)
        .filter(ProjectMember.user_id == user_id, ProjectMember.accepted.is_(False))
        .order_by(ProjectMember.created_at)
        .all()
    )

    logger.info(f"User {user_id} has {len(rows)} pending invitations")
    return [
        {"membership_id": membership.id, "project": project, "permissions": membership.permissions}
        for membership, project in rows
    ]


@router.get("/me/logins", response_model=List[schemas.LoginRecord])
def list_logins(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """List the caller's most recent logins, newest first."""
    logger.debug(f"User {user_id} listing login history")
    return (
        db.query(LoginHistory)
        .filter(LoginHistory.user_id == user_id)
        .order_by(LoginHistory.login_timestamp.desc())
        .limit(limit)
        .all()
    )


@router.get("/{user_id}", response_model=schemas.User)
def get_user(
    user_id: str,
    caller_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Get a user's public profile (no email)."""
    logger.debug(f"User {caller_id} fetching user {user_id}")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.info(f"User {user_id} not found")
        raise Forbidden()
    return user
