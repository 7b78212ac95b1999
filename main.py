import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

from config import Settings, load_settings
from database import USERS, build_store
from errors import ForbiddenError, LifecycleError, ValidationError
from identity import RECYCLER, ROLE_PATTERN, Identity, IdentityResolver, UserIdentity, hash_password, is_admin
from lifecycle import LifecycleEngine
from logger import setup_logging
from schemas import RequestDetails, User

logger = logging.getLogger(__name__)

auth_scheme = HTTPBearer()

# ----------------------
# Request bodies (simple inline, collection schemas live in schemas.py)
# ----------------------

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = Field("individual", pattern=ROLE_PATTERN)
    phone: Optional[str] = None
    address: Optional[str] = None
    organization: Optional[str] = None


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class AdminLogin(BaseModel):
    email: str
    password: str


class ReviewPayload(BaseModel):
    decision: Literal["approve", "reject"]
    notes: Optional[str] = None


class WithdrawPayload(BaseModel):
    notes: Optional[str] = None


class PaymentPayload(BaseModel):
    paymentMethod: str = Field(..., min_length=1)
    paymentReference: Optional[str] = None


class ConfirmPayload(BaseModel):
    confirmed: bool
    notes: Optional[str] = None

# ----------------------
# Serialization helpers
# ----------------------

def to_json(value):
    """Render store documents for responses: Decimal -> float, datetime -> ISO."""
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_json(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def public_user(user_doc: dict) -> dict:
    return {
        "id": user_doc["id"],
        "name": user_doc["name"],
        "email": user_doc["email"],
        "role": user_doc["role"],
        "phone": user_doc.get("phone"),
        "address": user_doc.get("address"),
        "organization": user_doc.get("organization"),
        "dateCreated": to_json(user_doc.get("dateCreated")),
    }

# ----------------------
# Dependencies
# ----------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request):
    return request.app.state.store


def get_engine(request: Request) -> LifecycleEngine:
    return request.app.state.engine


def get_resolver(request: Request) -> IdentityResolver:
    return request.app.state.resolver


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    resolver: IdentityResolver = Depends(get_resolver),
) -> Identity:
    identity = resolver.resolve(credentials.credentials)
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return identity


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not is_admin(identity):
        raise ForbiddenError("Admin access required")
    return identity

# ----------------------
# Auth Routes
# ----------------------
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/signup", status_code=201)
def signup(payload: UserCreate, resolver: IdentityResolver = Depends(get_resolver),
           settings: Settings = Depends(get_settings), store=Depends(get_store)):
    email = str(payload.email).lower()
    if email == settings.admin_email:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        phone=payload.phone,
        address=payload.address,
        organization=payload.organization,
    )
    try:
        user_doc = store.create(USERS, user.model_dump())
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")

    logger.info("Registered %s user %s", user_doc["role"], user_doc["id"])
    token = resolver.create_access_token(UserIdentity(id=user_doc["id"], role=user_doc["role"]))
    return {"token": token, "user": public_user(user_doc)}


@auth_router.post("/login")
def login(payload: UserLogin, resolver: IdentityResolver = Depends(get_resolver)):
    user_doc = resolver.user_login(str(payload.email), payload.password)
    if not user_doc:
        raise HTTPException(status_code=400, detail="Invalid credentials")

    token = resolver.create_access_token(UserIdentity(id=user_doc["id"], role=user_doc["role"]))
    return {"token": token, "user": public_user(user_doc)}


@auth_router.post("/admin/login")
def admin_login(payload: AdminLogin, resolver: IdentityResolver = Depends(get_resolver)):
    admin = resolver.admin_login(payload.email, payload.password)
    if admin is None:
        raise HTTPException(status_code=400, detail="Invalid admin credentials")
    return {"token": resolver.create_access_token(admin), "user": {"id": admin.id, "role": admin.role}}


@auth_router.get("/me")
def me(identity: Identity = Depends(get_current_identity)):
    return {"id": identity.id, "role": identity.role}

# ----------------------
# Users & Recyclers
# ----------------------
users_router = APIRouter(prefix="/api", tags=["users"])


@users_router.get("/users/me")
def my_profile(identity: Identity = Depends(get_current_identity), store=Depends(get_store)):
    user_doc = store.get(USERS, identity.id)
    if not user_doc:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user_doc)


@users_router.get("/recyclers")
def list_recyclers(identity: Identity = Depends(get_current_identity), store=Depends(get_store)):
    recyclers = store.query(USERS, {"role": RECYCLER}, sort=[("name", 1)])
    return [
        {"id": r["id"], "name": r["name"], "organization": r.get("organization"), "address": r.get("address")}
        for r in recyclers
    ]

# ----------------------
# Recycling Requests
# ----------------------
requests_router = APIRouter(prefix="/api/recycling-requests", tags=["recycling-requests"])


@requests_router.post("", status_code=201)
def submit_request(payload: RequestDetails, identity: Identity = Depends(get_current_identity),
                   engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.submit(identity, payload))


@requests_router.get("/mine")
def my_requests(identity: Identity = Depends(get_current_identity),
                engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.list_requests_for_owner(identity))


@requests_router.get("/available")
def available_requests(identity: Identity = Depends(get_current_identity),
                       engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.list_available(identity))


@requests_router.get("/accepted")
def accepted_requests(identity: Identity = Depends(get_current_identity),
                      engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.list_accepted(identity))


@requests_router.get("/{request_id}")
def get_request(request_id: str, identity: Identity = Depends(get_current_identity),
                engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.get_request(identity, request_id))


@requests_router.post("/{request_id}/accept")
def accept_request(request_id: str, identity: Identity = Depends(get_current_identity),
                   engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.accept(identity, request_id))


@requests_router.post("/{request_id}/complete")
def complete_request(request_id: str, identity: Identity = Depends(get_current_identity),
                     engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.complete(identity, request_id))


@requests_router.get("/{request_id}/secret-code")
def secret_code(request_id: str, identity: Identity = Depends(get_current_identity),
                engine: LifecycleEngine = Depends(get_engine)):
    return {"requestId": request_id, "secretCode": engine.get_secret_code(identity, request_id)}

# ----------------------
# Commission Transactions
# ----------------------
transactions_router = APIRouter(prefix="/api/transactions", tags=["transactions"])


@transactions_router.get("/mine")
def my_transactions(status: Optional[str] = None, identity: Identity = Depends(get_current_identity),
                    engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.list_transactions(identity, status))


@transactions_router.get("/pending")
def pending_transactions(identity: Identity = Depends(get_current_identity),
                         engine: LifecycleEngine = Depends(get_engine)):
    pending = engine.list_pending_for_recycler(identity)
    return {"pendingPayments": len(pending), "transactions": to_json(pending)}


@transactions_router.post("/{transaction_id}/pay")
def pay_commission(transaction_id: str, payload: PaymentPayload,
                   identity: Identity = Depends(get_current_identity),
                   engine: LifecycleEngine = Depends(get_engine)):
    tx = engine.pay(identity, transaction_id, payload.paymentMethod, payload.paymentReference)
    return to_json(tx)

# ----------------------
# Admin
# ----------------------
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@admin_router.get("/requests")
def admin_requests(status: Optional[str] = None, identity: Identity = Depends(require_admin),
                   engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.list_requests(identity, status))


@admin_router.post("/requests/{request_id}/review")
def review_request(request_id: str, payload: ReviewPayload, identity: Identity = Depends(require_admin),
                   engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.review(identity, request_id, payload.decision, payload.notes))


@admin_router.post("/requests/{request_id}/withdraw")
def withdraw_request(request_id: str, payload: WithdrawPayload, identity: Identity = Depends(require_admin),
                     engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.withdraw(identity, request_id, payload.notes))


@admin_router.get("/users")
def admin_users(identity: Identity = Depends(require_admin), store=Depends(get_store)):
    return [public_user(u) for u in store.query(USERS, {}, sort=[("dateCreated", -1)])]


@admin_router.get("/transactions")
def admin_transactions(status: Optional[str] = None, identity: Identity = Depends(require_admin),
                       engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.list_transactions(identity, status))


@admin_router.get("/recyclers/{recycler_id}/pending")
def admin_recycler_pending(recycler_id: str, identity: Identity = Depends(require_admin),
                           engine: LifecycleEngine = Depends(get_engine)):
    pending = engine.list_pending_for_recycler(identity, recycler_id)
    return {"pendingPayments": len(pending), "transactions": to_json(pending)}


@admin_router.post("/transactions/{transaction_id}/confirm")
def confirm_transaction(transaction_id: str, payload: ConfirmPayload, identity: Identity = Depends(require_admin),
                        engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.confirm(identity, transaction_id, payload.confirmed, payload.notes))


@admin_router.get("/commission-summary")
def commission_summary(identity: Identity = Depends(require_admin),
                       engine: LifecycleEngine = Depends(get_engine)):
    return to_json(engine.commission_summary(identity))

# ----------------------
# Error responses
# ----------------------
STATUS_CODES = {
    "VALIDATION_ERROR": 400,
    "FORBIDDEN": 403,
    "PAYMENT_PENDING": 403,
    "NOT_FOUND": 404,
    "INVALID_STATE": 409,
    "CONCURRENT_MODIFICATION": 409,
}


async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    return JSONResponse(status_code=STATUS_CODES.get(exc.code, 400), content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        parts.append(f"{field}: {err.get('msg')}")
    return JSONResponse(status_code=400, content=ValidationError("; ".join(parts)).to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store.ensure_indexes()
    logger.info("E2Recycle API ready (commission rate %d%%)", app.state.settings.commission_rate)
    yield

# ----------------------
# App & Security Setup
# ----------------------

def create_app(settings: Optional[Settings] = None, store=None) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    store = store if store is not None else build_store(settings)

    app = FastAPI(title="E2Recycle API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.resolver = IdentityResolver(settings, store)
    app.state.engine = LifecycleEngine(store, commission_rate=settings.commission_rate)

    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.get("/")
    def read_root():
        return {"message": "E2Recycle Backend API is running!"}

    for router in (auth_router, users_router, requests_router, transactions_router, admin_router):
        app.include_router(router)

    return app


if __name__ == "__main__":
    import uvicorn
    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
