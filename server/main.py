"""
FastAPI server for the end-to-end encrypted mailbox.

This server:
- Issues identities (RSA key pair + 8-hex code) and session tokens
- Publishes public keys so senders can encrypt for a recipient
- Stores encrypted messages in a per-recipient pending queue and history
- Never sees plaintext; clients poll to drain their queue
"""

from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from crypto.primitives import KeyGenerationError

from .accounts import AccountService, AuthError
from .auth import verify_token
from .config import Settings, settings as default_settings
from .database import Database
from .delivery import DeliveryError, DeliveryService
from .logger import get_logger, setup_logging
from .store import MessageStore

logger = get_logger("server")


# Pydantic models for API. Fields are optional so that missing values
# are reported as 400 by the services rather than 422 by FastAPI.
class RegisterRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    code: Optional[str] = None
    password: Optional[str] = None


class SendMessageRequest(BaseModel):
    to: Optional[str] = None
    encryptedMessage: Optional[str] = None
    encryptedAESKey: Optional[str] = None


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application and its services"""
    settings = settings or default_settings
    setup_logging(settings.log_level, settings.log_file)

    db = Database(settings.database_url)
    store = MessageStore(db)
    delivery = DeliveryService(db, store)
    accounts = AccountService(db, settings)
    bearer = HTTPBearer(auto_error=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Starting %s v%s", settings.project_name, settings.project_version)
        if settings.retain_private_keys:
            logger.warning("Server retains private keys; a server compromise exposes all messages")
        yield
        await db.close()
        logger.info("Server shutting down")

    app = FastAPI(
        title=settings.project_name,
        description="Store-and-forward messaging with RSA-OAEP + AES hybrid encryption",
        version=settings.project_version,
        lifespan=lifespan
    )
    app.state.db = db
    app.state.store = store
    app.state.delivery = delivery
    app.state.accounts = accounts

    @app.middleware("http")
    async def log_exceptions(request: Request, call_next):
        """Log unhandled exceptions with request context."""
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
            raise

    @app.exception_handler(DeliveryError)
    async def delivery_error_handler(request: Request, exc: DeliveryError):
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"detail": "Malformed request body."}, status_code=status.HTTP_400_BAD_REQUEST)

    async def current_code(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ) -> str:
        """Resolve the bearer token to an identity code"""
        if credentials is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No token provided.")

        code = verify_token(credentials.credentials, settings)
        if not code:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token.")
        return code

    @app.get("/")
    async def root():
        return {"message": "Welcome to the server."}

    @app.post("/register", status_code=status.HTTP_201_CREATED)
    async def register(body: RegisterRequest):
        """
        Register a new identity.

        The private key is returned here once. Unless the server is
        configured to retain private keys, it is not stored anywhere else.
        """
        try:
            registration = await accounts.register(body.email, body.phone, body.password)
        except KeyGenerationError as e:
            logger.error("Registration aborted: %s", e)
            raise HTTPException(status_code=500, detail="Key generation failed.")

        return {
            "message": "User registered successfully.",
            "code": registration.identity.code,
            "publicKey": registration.identity.public_key,
            "privateKey": registration.identity.private_key
        }

    @app.post("/login")
    async def login(body: LoginRequest):
        """Authenticate an identity and return a JWT token"""
        try:
            user, token = await accounts.authenticate(body.code, body.password)
        except AuthError as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

        user_info = {
            "email": user.email,
            "phone": user.phone,
            "code": user.code,
            "publicKey": user.public_key
        }
        if user.private_key:
            user_info["privateKey"] = user.private_key

        return {"message": "Login successful.", "token": token, "user": user_info}

    @app.get("/public-key/{code}")
    async def public_key(code: str):
        """
        Get the public key for an identity.

        This is public - anyone can encrypt a message for any identity.
        """
        return {"publicKey": await delivery.lookup_public_key(code)}

    @app.post("/send-message")
    async def send_message(body: SendMessageRequest, code: str = Depends(current_code)):
        """Queue an encrypted message for its recipient"""
        await delivery.submit(code, body.to, body.encryptedMessage, body.encryptedAESKey)
        return {"message": "sent"}

    @app.get("/fetch-messages")
    async def fetch_messages(code: str = Depends(current_code)):
        """Drain the caller's pending queue"""
        messages = await delivery.fetch_pending(code)
        return {"messages": [m.to_dict() for m in messages]}

    @app.get("/message-history")
    async def message_history(code: str = Depends(current_code)):
        """Every message ever received by the caller"""
        messages = await delivery.fetch_history(code)
        return {"messages": [m.to_dict() for m in messages]}

    @app.get("/dashboard")
    async def dashboard(code: str = Depends(current_code)):
        return {"message": "Welcome! This is your dashboard."}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=5000)
