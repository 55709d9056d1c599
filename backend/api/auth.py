from fastapi import APIRouter, Depends, HTTPException, Request, Response
from passlib.context import CryptContext
from pydantic import BaseModel, constr, field_validator

from api.deps import get_container
from core.logging_config import get_logger
from core.metrics import auth_attempts_total
from db import models
from services.container import ServiceContainer
from utils.session_utils import get_current_user, token_from_request

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class Credentials(BaseModel):
    email: constr(min_length=3, max_length=254)
    password: constr(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


@router.post("/signup")
def signup(payload: Credentials, container: ServiceContainer = Depends(get_container)):
    with container.database.transaction() as db:
        existing = db.query(models.User).filter(models.User.email == payload.email).first()
        if existing:
            auth_attempts_total.labels(status="rejected", method="signup").inc()
            raise HTTPException(status_code=400, detail="User already exists!")
        db.add(models.User(email=payload.email, hashed_password=pwd_context.hash(payload.password)))

    auth_attempts_total.labels(status="success", method="signup").inc()
    logger.info("User signed up", extra={"email": payload.email})
    return {"message": "Signup successful!"}


@router.post("/login")
def login(payload: Credentials, response: Response, container: ServiceContainer = Depends(get_container)):
    db = container.database.session()
    try:
        user = db.query(models.User).filter(models.User.email == payload.email).first()
        if not user or not pwd_context.verify(payload.password, user.hashed_password):
            auth_attempts_total.labels(status="failed", method="login").inc()
            raise HTTPException(status_code=401, detail="Invalid credentials!")
        user_info = {"user_id": user.id, "email": user.email}
    finally:
        db.close()

    token = container.sessions.create_session(user_info)
    response.set_cookie(
        key="session_id",
        value=token,
        httponly=True,
        secure=False,  # local development
        samesite="lax"
    )
    auth_attempts_total.labels(status="success", method="login").inc()
    return {"token": token, "user": user_info}


@router.post("/logout")
def logout(request: Request, response: Response, container: ServiceContainer = Depends(get_container)):
    token = token_from_request(request)
    if token:
        container.sessions.destroy_session(token)
    response.delete_cookie("session_id")
    return {"message": "Logged out"}


@router.get("/me")
def me(user_id: int = Depends(get_current_user), container: ServiceContainer = Depends(get_container)):
    db = container.database.session()
    try:
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return {
            "id": user.id,
            "email": user.email,
            "createdAt": user.created_at.isoformat() if user.created_at else None,
        }
    finally:
        db.close()
