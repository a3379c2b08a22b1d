import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import database
from cart import Cart
from database import create_document, ensure_indexes, get_db, get_documents, serialize, to_object_id, utcnow
from errors import ERROR_STATUS_CODES, BookNotFoundError, BookstoreError
from orders import OrderService
from payments import StripeGateway, verify_webhook
from schemas import (
    Book as BookSchema,
    BookOut,
    BookUpdate,
    CheckoutRequest,
    CheckoutResponse,
    OrderOut,
    OrderStatusUpdate,
    PaymentIntentRequest,
    Profile as ProfileSchema,
    ProfileOut,
    ProfileUpdate,
    Register,
)

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(name)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger("bookstore")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Bookstore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookstoreError)
async def bookstore_error_handler(request: Request, exc: BookstoreError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# Helpers
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def profile_out(doc: dict) -> ProfileOut:
    return ProfileOut(**serialize(doc))


def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> ProfileOut:
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    oid = to_object_id(user_id)
    user = db["profile"].find_one({"_id": oid}) if oid else None
    if not user:
        raise credentials_exception
    return profile_out(user)


def require_admin(current: ProfileOut = Depends(get_current_user)) -> ProfileOut:
    if not current.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current


@lru_cache
def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_order_service(db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)) -> OrderService:
    return OrderService(db, gateway)


@app.get("/")
def read_root():
    return {"message": "Bookstore backend is running"}


# Auth
@app.post("/api/register", response_model=ProfileOut, status_code=201)
def register(payload: Register, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["profile"].find_one({"email": email}):
        raise HTTPException(400, "Email already registered")
    profile = ProfileSchema(
        email=email,
        password_hash=get_password_hash(payload.password),
        full_name=payload.full_name,
        is_admin=email in ADMIN_EMAILS,
    )
    try:
        user_id = create_document(db, "profile", profile)
    except DuplicateKeyError:
        raise HTTPException(400, "Email already registered")
    logger.info("Registered user %s", user_id)
    return profile_out(db["profile"].find_one({"_id": to_object_id(user_id)}))


@app.post("/api/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    user = db["profile"].find_one({"email": form_data.username.lower()})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(400, "Incorrect email or password")
    access_token = create_access_token({"sub": str(user["_id"])})
    return Token(access_token=access_token)


@app.get("/api/me", response_model=ProfileOut)
def me(current: ProfileOut = Depends(get_current_user)):
    return current


@app.patch("/api/me", response_model=ProfileOut)
def update_me(
    payload: ProfileUpdate,
    current: ProfileOut = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    if changes:
        db["profile"].update_one({"_id": to_object_id(current.id)}, {"$set": {**changes, "updated_at": utcnow()}})
    return profile_out(db["profile"].find_one({"_id": to_object_id(current.id)}))


# Catalog
def find_book(db: Database, book_id: str) -> dict:
    oid = to_object_id(book_id)
    book = db["book"].find_one({"_id": oid}) if oid else None
    if not book:
        raise BookNotFoundError(book_id)
    return book


@app.get("/api/books")
def list_books(
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    filter_q = {"stock": {"$gt": 0}}
    if q:
        pattern = re.escape(q)
        filter_q["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"short_description": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    total = db["book"].count_documents(filter_q)
    cursor = db["book"].find(filter_q).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    items = [BookOut(**serialize(doc)) for doc in cursor]
    return {"items": items, "page": page, "limit": limit, "total": total}


@app.get("/api/books/{book_id}", response_model=BookOut)
def get_book(book_id: str, db: Database = Depends(get_db)):
    return BookOut(**serialize(find_book(db, book_id)))


# Checkout and orders
@app.post("/api/checkout", response_model=CheckoutResponse, status_code=201)
def checkout(
    payload: CheckoutRequest,
    current: ProfileOut = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order, intent, payment_error = service.checkout(current.id, Cart(payload.items), payload.shipping)
    return CheckoutResponse(
        order=order,
        client_secret=intent.client_secret if intent else None,
        payment_error=payment_error,
    )


@app.post("/api/create-payment-intent")
def create_payment_intent(
    payload: PaymentIntentRequest,
    current: ProfileOut = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    try:
        intent = service.request_payment_intent(current.id, payload.orderId, payload.amount)
    except BookstoreError as e:
        logger.warning("Payment intent for order %s rejected: %s", payload.orderId, e)
        return JSONResponse(status_code=ERROR_STATUS_CODES.get(type(e), 400), content={"error": str(e)})
    return {"clientSecret": intent.client_secret}


@app.get("/api/orders", response_model=List[OrderOut])
def my_orders(current: ProfileOut = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.list_orders(current.id)


@app.get("/api/orders/{order_id}", response_model=OrderOut)
def my_order(
    order_id: str,
    current: ProfileOut = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return service.get_order(order_id, current.id)


@app.post("/api/orders/{order_id}/confirm-payment", response_model=OrderOut)
def confirm_payment(
    order_id: str,
    current: ProfileOut = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return service.confirm_payment(current.id, order_id)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: str,
    current: ProfileOut = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return service.cancel_order(current.id, order_id)


# Stripe webhook
@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, db: Database = Depends(get_db)):
    body = await request.body()
    try:
        event = verify_webhook(body, request.headers.get("stripe-signature"))
    except BookstoreError as e:
        logger.warning("Webhook rejected: %s", e)
        return JSONResponse(status_code=400, content={"error": str(e)})
    logger.info("Received event: %s", event.type)
    await run_in_threadpool(OrderService(db).handle_event, event)
    return {"received": True}


# Admin
@app.get("/api/admin/books", response_model=List[BookOut])
def admin_list_books(admin: ProfileOut = Depends(require_admin), db: Database = Depends(get_db)):
    return [BookOut(**doc) for doc in get_documents(db, "book", sort=[("created_at", -1)])]


@app.post("/api/admin/books", response_model=BookOut, status_code=201)
def admin_create_book(book: BookSchema, admin: ProfileOut = Depends(require_admin), db: Database = Depends(get_db)):
    book_id = create_document(db, "book", book)
    logger.info("Admin %s created book %s", admin.id, book_id)
    return BookOut(**serialize(find_book(db, book_id)))


@app.put("/api/admin/books/{book_id}", response_model=BookOut)
def admin_update_book(
    book_id: str,
    payload: BookUpdate,
    admin: ProfileOut = Depends(require_admin),
    db: Database = Depends(get_db),
):
    book = find_book(db, book_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes:
        db["book"].update_one({"_id": book["_id"]}, {"$set": {**changes, "updated_at": utcnow()}})
    return BookOut(**serialize(find_book(db, book_id)))


@app.delete("/api/admin/books/{book_id}")
def admin_delete_book(book_id: str, admin: ProfileOut = Depends(require_admin), db: Database = Depends(get_db)):
    book = find_book(db, book_id)
    db["book"].delete_one({"_id": book["_id"]})
    logger.info("Admin %s deleted book %s", admin.id, book_id)
    return {"ok": True}


@app.get("/api/admin/users", response_model=List[ProfileOut])
def admin_list_users(admin: ProfileOut = Depends(require_admin), db: Database = Depends(get_db)):
    return [ProfileOut(**doc) for doc in get_documents(db, "profile", sort=[("created_at", -1)])]


@app.patch("/api/admin/users/{user_id}/admin", response_model=ProfileOut)
def admin_toggle_admin(user_id: str, admin: ProfileOut = Depends(require_admin), db: Database = Depends(get_db)):
    oid = to_object_id(user_id)
    user = db["profile"].find_one({"_id": oid}) if oid else None
    if not user:
        raise HTTPException(404, "User not found")
    db["profile"].update_one(
        {"_id": oid},
        {"$set": {"is_admin": not user.get("is_admin", False), "updated_at": utcnow()}},
    )
    return profile_out(db["profile"].find_one({"_id": oid}))


@app.get("/api/admin/orders", response_model=List[OrderOut])
def admin_list_orders(admin: ProfileOut = Depends(require_admin), service: OrderService = Depends(get_order_service)):
    return service.list_orders()


@app.patch("/api/admin/orders/{order_id}/status", response_model=OrderOut)
def admin_set_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin: ProfileOut = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return service.set_status(order_id, payload.status)


@app.get("/api/admin/stats")
def admin_stats(admin: ProfileOut = Depends(require_admin), db: Database = Depends(get_db)):
    revenue = sum(o.get("total_amount", 0) for o in db["order"].find({}, {"total_amount": 1}))
    return {
        "total_users": db["profile"].count_documents({}),
        "total_orders": db["order"].count_documents({}),
        "total_books": db["book"].count_documents({}),
        "total_revenue": revenue,
    }


# Seed sample data if empty
@app.post("/api/seed")
def seed(db: Database = Depends(get_db)):
    if db["book"].count_documents({}) == 0:
        books = [
            BookSchema(
                title="Imihango n'Imigenzo n'Imiziririzo mu Rwanda",
                short_description="A comprehensive study of Rwandan customs, traditions, and taboos.",
                description="Ceremonies, social norms and the wisdom passed down through generations.",
                price=35000,
                cover_image="/placeholder.svg",
                year=1964,
                pages=280,
                language="Kinyarwanda",
                stock=20,
            ),
            BookSchema(
                title="Indirimbo z'Ubuhamya",
                short_description="A collection of sacred hymns and spiritual songs.",
                description="Hymns for the liturgical seasons and sacramental celebrations.",
                price=25000,
                cover_image="/placeholder.svg",
                year=1958,
                pages=156,
                language="Kinyarwanda",
                stock=35,
            ),
            BookSchema(
                title="Inkuru y'Ubukristu mu Rwanda",
                short_description="The history of Christianity in Rwanda.",
                description="From the first missionaries to the establishment of the local Church.",
                price=40000,
                cover_image="/placeholder.svg",
                year=1971,
                pages=320,
                language="Kinyarwanda",
                stock=12,
            ),
        ]
        for book in books:
            create_document(db, "book", book)
    return {"ok": True}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    if database.db is not None:
        response["database"] = "✅ Available"
        response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
        try:
            collections = database.db.list_collection_names()
            response["collections"] = collections[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
