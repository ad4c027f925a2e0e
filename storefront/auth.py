import logging
import secrets
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.security_config import limiter, REGISTER_RATE, LOGIN_RATE, REFRESH_RATE, PASSWORD_RESET_RATE
from shared.utils import (
    settings, get_password_hash, verify_password, hash_token,
    create_access_token, create_refresh_token, verify_refresh_token, require_auth,
    SuccessResponse, BadRequestException, UnauthorizedException, ForbiddenException,
)
from storefront.database import get_database, maybe_oid, serialize
from storefront.models import Role, UserDB, RefreshTokenDB, PasswordResetTokenDB, to_mongo
from storefront.notifications import EmailService, get_email_service
from storefront.schemas import (
    UserRegister, UserLogin, RefreshTokenRequest, AuthResponse, Token, UserResponse,
    ForgotPasswordRequest, ResetPasswordRequest,
)

logger = logging.getLogger("storefront.auth")

router = APIRouter(prefix="/auth", tags=["auth"])


class AuthService:
    def __init__(self, db: AsyncIOMotorDatabase, email_service: EmailService):
        self.db = db
        self.email_service = email_service

    async def register(self, data: UserRegister) -> dict:
        email = data.email.lower()
        existing_user = await self.db.users.find_one({"email": email})
        if existing_user:
            raise BadRequestException("Email already registered")

        user_db = UserDB(
            email=email,
            password_hash=get_password_hash(data.password),
            first_name=data.first_name,
            last_name=data.last_name,
            phone=data.phone,
        )
        try:
            result = await self.db.users.insert_one(to_mongo(user_db))
        except DuplicateKeyError:
            raise BadRequestException("Email already registered")

        user = await self.db.users.find_one({"_id": result.inserted_id})
        logger.info("User registered", extra={"user_id": str(result.inserted_id)})

        await self.email_service.send_welcome(email, data.first_name)

        return await self._auth_payload(user)

    async def login(self, data: UserLogin) -> dict:
        user = await self.db.users.find_one({"email": data.email.lower()})
        if not user or not verify_password(data.password, user["password_hash"]):
            raise UnauthorizedException("Invalid credentials")
        if not user.get("is_active", True):
            raise UnauthorizedException("Invalid credentials")
        return await self._auth_payload(user)

    async def refresh(self, refresh_token: str) -> dict:
        payload = verify_refresh_token(refresh_token)

        # Single use: the stored hash is removed as it is redeemed
        record = await self.db.refresh_tokens.find_one_and_delete(
            {"token_hash": hash_token(refresh_token)}
        )
        if not record or record["expires_at"] < datetime.utcnow():
            raise UnauthorizedException("Invalid refresh token")

        user = await self.db.users.find_one({"_id": maybe_oid(payload.get("sub"))})
        if not user or not user.get("is_active", True) or str(user["_id"]) != record["user_id"]:
            raise UnauthorizedException("Invalid refresh token")

        return await self._issue_tokens(user)

    async def logout(self, refresh_token: str):
        await self.db.refresh_tokens.delete_many({"token_hash": hash_token(refresh_token)})

    async def forgot_password(self, email: str):
        """Mail a single-use reset link; unknown or inactive addresses get the same silent treatment."""
        user = await self.db.users.find_one({"email": email.strip().lower()})
        if not user or not user.get("is_active", True):
            logger.info("Password reset requested for unknown or inactive account")
            return

        user_id = str(user["_id"])
        # Only the newest link stays usable
        await self.db.password_reset_tokens.update_many(
            {"user_id": user_id, "used": False}, {"$set": {"used": True}}
        )
        raw_token = secrets.token_hex(32)
        record = PasswordResetTokenDB(
            user_id=user_id,
            token_hash=hash_token(raw_token),
            expires_at=datetime.utcnow() + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES),
        )
        await self.db.password_reset_tokens.insert_one(to_mongo(record))
        logger.info("Password reset token issued", extra={"user_id": user_id})

        reset_url = f"{settings.FRONTEND_URL}/auth/reset-password/{raw_token}"
        await self.email_service.send_password_reset(user["email"], reset_url)

    async def reset_password(self, token: str, new_password: str):
        token = (token or "").strip()
        if not token:
            raise BadRequestException("Reset token is required")

        record = await self.db.password_reset_tokens.find_one_and_update(
            {"token_hash": hash_token(token), "used": False, "expires_at": {"$gt": datetime.utcnow()}},
            {"$set": {"used": True}},
        )
        if not record:
            raise BadRequestException("Invalid or expired reset token")

        user = await self.db.users.find_one({"_id": maybe_oid(record["user_id"])})
        if not user or not user.get("is_active", True):
            raise BadRequestException("Invalid or expired reset token")

        await self.db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": get_password_hash(new_password), "updated_at": datetime.utcnow()}},
        )
        # Existing sessions end with the old password
        await self.db.refresh_tokens.delete_many({"user_id": record["user_id"]})
        logger.info("Password reset completed", extra={"user_id": record["user_id"]})

    async def get_user(self, user_id: str) -> dict:
        user = await self.db.users.find_one({"_id": maybe_oid(user_id)})
        if not user:
            raise UnauthorizedException("User not found")
        return user

    async def _issue_tokens(self, user: dict) -> dict:
        claims = {"sub": str(user["_id"]), "email": user["email"], "role": user.get("role", Role.USER.value)}
        access_token = create_access_token(
            data=claims,
            expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        )
        refresh_token = create_refresh_token(data=claims)

        record = RefreshTokenDB(
            user_id=str(user["_id"]),
            token_hash=hash_token(refresh_token),
            expires_at=datetime.utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        )
        await self.db.refresh_tokens.insert_one(to_mongo(record))
        return {"access_token": access_token, "refresh_token": refresh_token, "token_type": "bearer"}

    async def _auth_payload(self, user: dict) -> dict:
        tokens = await self._issue_tokens(user)
        return {**tokens, "user": user_response(user)}


def user_response(user: dict) -> UserResponse:
    doc = serialize(user)
    return UserResponse(**doc)


# --- Dependencies ---

def get_auth_service(
    db: AsyncIOMotorDatabase = Depends(get_database),
    email_service: EmailService = Depends(get_email_service),
) -> AuthService:
    return AuthService(db, email_service)


async def get_current_user(
    request: Request,
    payload: dict = Depends(require_auth),
    db: AsyncIOMotorDatabase = Depends(get_database),
) -> dict:
    user = await db.users.find_one({"_id": maybe_oid(payload.get("sub"))})
    if not user or not user.get("is_active", True):
        raise UnauthorizedException("Invalid authentication credentials")
    request.state.user_id = str(user["_id"])
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "role": user.get("role", Role.USER.value),
        "first_name": user.get("first_name"),
    }


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] != Role.ADMIN.value:
        raise ForbiddenException("Admin access required")
    return user


def is_admin(user: dict) -> bool:
    return user.get("role") == Role.ADMIN.value


# --- Endpoints ---

@router.post("/register", response_model=SuccessResponse[AuthResponse])
@limiter.limit(REGISTER_RATE)
async def register(data: UserRegister, request: Request, service: AuthService = Depends(get_auth_service)):
    result = await service.register(data)
    return SuccessResponse(data=AuthResponse(**result), message="User registered successfully")


@router.post("/login", response_model=SuccessResponse[AuthResponse])
@limiter.limit(LOGIN_RATE)
async def login(credentials: UserLogin, request: Request, service: AuthService = Depends(get_auth_service)):
    result = await service.login(credentials)
    return SuccessResponse(data=AuthResponse(**result))


@router.post("/refresh", response_model=SuccessResponse[Token])
@limiter.limit(REFRESH_RATE)
async def refresh_token(body: RefreshTokenRequest, request: Request, service: AuthService = Depends(get_auth_service)):
    tokens = await service.refresh(body.refresh_token)
    return SuccessResponse(data=Token(**tokens))


@router.post("/logout", response_model=SuccessResponse[dict])
async def logout(body: RefreshTokenRequest, service: AuthService = Depends(get_auth_service)):
    await service.logout(body.refresh_token)
    return SuccessResponse(message="Logged out successfully")


@router.get("/me", response_model=SuccessResponse[UserResponse])
async def me(user: dict = Depends(get_current_user), service: AuthService = Depends(get_auth_service)):
    doc = await service.get_user(user["id"])
    return SuccessResponse(data=user_response(doc))


@router.post("/forgot-password", response_model=SuccessResponse[dict])
@limiter.limit(PASSWORD_RESET_RATE)
async def forgot_password(body: ForgotPasswordRequest, request: Request, service: AuthService = Depends(get_auth_service)):
    await service.forgot_password(body.email)
    return SuccessResponse(message="If the email is registered, a reset link has been sent")


@router.post("/reset-password", response_model=SuccessResponse[dict])
@limiter.limit(PASSWORD_RESET_RATE)
async def reset_password(body: ResetPasswordRequest, request: Request, service: AuthService = Depends(get_auth_service)):
    await service.reset_password(body.token, body.new_password)
    return SuccessResponse(message="Password updated, you can now log in")
