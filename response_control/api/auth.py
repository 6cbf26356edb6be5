import os
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from response_control.core.security import (
    create_access_token,
    decode_user_id,
    encrypt_api_key,
    get_password_hash,
    mask_api_key,
    verify_password,
)
from response_control.db.models import User, UserAIConfig
from response_control.db.session import get_db
from response_control.services.llm import PROVIDER_DEFAULT_MODELS

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class AIProvider(str, Enum):
    openai = "openai"
    gemini = "gemini"


class CompletionConfigInput(BaseModel):
    ai_provider: AIProvider
    ai_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_utility_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_deep_thinker_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_api_key: str = Field(min_length=8, max_length=512)

    def resolved_models(self) -> tuple[str, str]:
        default_utility, default_deep = PROVIDER_DEFAULT_MODELS[self.ai_provider.value]
        utility = (self.ai_utility_model or self.ai_model or default_utility).strip()
        deep = (self.ai_deep_thinker_model or self.ai_model or default_deep).strip()
        return utility, deep


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    ai_config: Optional[CompletionConfigInput] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class CompletionConfigResponse(BaseModel):
    ai_provider: AIProvider
    ai_utility_model: str
    ai_deep_thinker_model: str
    api_key_masked: str
    configured: bool = True


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _upsert_ai_config(db: Session, user_id: int, ai: CompletionConfigInput) -> UserAIConfig:
    utility, deep = ai.resolved_models()
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if not cfg:
        cfg = UserAIConfig(user_id=user_id)
        db.add(cfg)
    cfg.ai_provider = ai.ai_provider.value
    cfg.ai_utility_model = utility
    cfg.ai_deep_thinker_model = deep
    cfg.encrypted_api_key = encrypt_api_key(ai.ai_api_key)
    return cfg


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    try:
        user_id = decode_user_id(token)
    except Exception:
        raise _unauthorized()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise _unauthorized()
    return user


def admin_emails() -> set[str]:
    return {email.strip().lower() for email in os.getenv("ADMIN_EMAILS", "").split(",") if email.strip()}


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    if user.email.lower() not in admin_emails():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)) -> TokenResponse:
    email = payload.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(email=email, password_hash=get_password_hash(payload.password))
    db.add(user)
    db.flush()
    if payload.ai_config:
        _upsert_ai_config(db, user.id, payload.ai_config)
    db.commit()
    return TokenResponse(access_token=create_access_token(user.id))


@router.post("/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username.lower()).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise _unauthorized()
    return TokenResponse(access_token=create_access_token(user.id))


@router.put("/ai-config", response_model=CompletionConfigResponse)
def set_ai_config(
    payload: CompletionConfigInput,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CompletionConfigResponse:
    cfg = _upsert_ai_config(db, user.id, payload)
    db.commit()
    return CompletionConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_utility_model=cfg.ai_utility_model,
        ai_deep_thinker_model=cfg.ai_deep_thinker_model,
        api_key_masked=mask_api_key(payload.ai_api_key),
    )


@router.get("/ai-config", response_model=CompletionConfigResponse)
def get_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> CompletionConfigResponse:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    # The stored key is never decrypted for reads.
    return CompletionConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_utility_model=cfg.ai_utility_model,
        ai_deep_thinker_model=cfg.ai_deep_thinker_model,
        api_key_masked="****...****",
    )


@router.delete("/ai-config", status_code=status.HTTP_204_NO_CONTENT)
def revoke_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> None:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    db.delete(cfg)
    db.commit()
