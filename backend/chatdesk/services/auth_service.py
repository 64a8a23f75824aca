"""
Authentication and authorization for dashboard operators.

Tokens are issued by the identity provider; this service only verifies
them and maps the role claim onto what an operator may do.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from ..config import settings

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)

SUPER_ADMIN = "Super Admin"
KNOWLEDGE_MANAGER = "Knowledge Manager"
CHATBOT_MANAGER = "Chatbot Manager"
ANALYST = "Analyst/Reporter"
SUPPORT_AGENT = "Support Agent"

# Who may open conversation views
VIEWER_ROLES: FrozenSet[str] = frozenset({SUPER_ADMIN, CHATBOT_MANAGER, ANALYST, SUPPORT_AGENT})
# Who may reply inside a conversation
INTERVENTION_ROLES: FrozenSet[str] = frozenset({SUPER_ADMIN, CHATBOT_MANAGER, SUPPORT_AGENT})


@dataclass(frozen=True)
class AgentIdentity:
    """An authenticated dashboard operator."""
    id: str
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def can_view(self) -> bool:
        return self.role in VIEWER_ROLES

    @property
    def can_intervene(self) -> bool:
        return self.role in INTERVENTION_ROLES


class AuthService:
    """Verifies identity-provider tokens."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        role_claim: Optional[str] = None,
        audience: Optional[str] = None
    ):
        self.secret_key = secret_key if secret_key is not None else settings.get_jwt_secret()
        self.algorithm = algorithm or settings.jwt_algorithm
        self.role_claim = role_claim or settings.jwt_role_claim
        self.audience = audience if audience is not None else settings.jwt_audience

    def create_token(
        self,
        user_id: str,
        email: Optional[str] = None,
        role: Optional[str] = None,
        expires_in: timedelta = timedelta(hours=1)
    ) -> str:
        """
        Create a token the way the identity provider does.

        Used by tests and local tooling.
        """
        if not self.secret_key:
            raise RuntimeError("JWT secret not configured (set JWT_SECRET)")

        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {"sub": user_id, "iat": now, "exp": now + expires_in}
        if email:
            payload["email"] = email
        if role:
            payload[self.role_claim] = role
        if self.audience:
            payload["aud"] = self.audience

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> AgentIdentity:
        """
        Verify a bearer token and extract the operator.

        Raises:
            HTTPException: 401 if the token is missing, expired or invalid
        """
        if not self.secret_key:
            logger.error("JWT secret not configured; rejecting operator request")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication not configured"
            )

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"require": ["sub", "exp"], "verify_aud": bool(self.audience)}
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired"
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected token: {e}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token"
            )

        return AgentIdentity(
            id=str(payload["sub"]),
            email=payload.get("email"),
            role=payload.get(self.role_claim)
        )


_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service


def set_auth_service(service: Optional[AuthService]) -> None:
    """Swap the verifier (tests, app factories)."""
    global _auth_service
    _auth_service = service


class RoleChecker:
    """FastAPI dependency admitting only operators with one of ``allowed_roles``."""

    def __init__(self, allowed_roles):
        self.allowed_roles = frozenset(allowed_roles)

    def __call__(
        self,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
    ) -> AgentIdentity:
        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"}
            )

        agent = get_auth_service().verify_token(credentials.credentials)

        if agent.role not in self.allowed_roles:
            logger.warning(f"Operator {agent.id} with role {agent.role!r} denied")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )

        return agent


# Role checkers
require_viewer = RoleChecker(VIEWER_ROLES)
require_intervention = RoleChecker(INTERVENTION_ROLES)
