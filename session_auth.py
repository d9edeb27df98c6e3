#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
session_auth.py - Session identity for workspace endpoints

Login, consent and cookie issuance belong to the external identity
provider. This module only reads the session token it issued (HS256 JWT,
in the session cookie or an Authorization: Bearer header) and derives the
opaque user id the workspace tables are keyed by.
"""

import hashlib
import logging
import os
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, Request

logger = logging.getLogger("iaware-auth")

# Shared with the identity provider (development default only)
SESSION_SECRET = os.environ.get("SESSION_SECRET", "IAWARE-DEV-SESSION-SECRET")
SESSION_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.environ.get("SESSION_COOKIE_NAME", "session")


class SessionUser:
    """Authenticated caller; carries no PII, only the hashed subject"""

    def __init__(self, user_id: str):
        self.id = user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": None,
            "firstName": None,
            "lastName": None,
            "profileImageUrl": None,
        }


def hash_subject(subject: str) -> str:
    return hashlib.sha256(subject.encode("utf-8")).hexdigest()


def decode_session_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, SESSION_SECRET, algorithms=[SESSION_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.debug(f"Rejected session token: {e.__class__.__name__}")
        return None


def _token_from_request(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization") or ""
    # Other schemes (Basic, ...) belong to someone else; use the cookie
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE_NAME)


def current_user(request: Request) -> Optional[SessionUser]:
    """FastAPI dependency: the session's user, or None for guests."""
    token = _token_from_request(request)
    if not token:
        return None
    claims = decode_session_token(token)
    if not claims or not claims.get("sub"):
        return None
    return SessionUser(hash_subject(str(claims["sub"])))


def require_auth(request: Request) -> SessionUser:
    """FastAPI dependency: 401 unless a valid session is present."""
    user = current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
