import asyncio
import logging
import os
from datetime import date, datetime, time, timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import models
import order_lifecycle
import qr_codes
import table_service
import waiter_call_manager
from database import SessionLocal, engine, get_db, init_restaurant_data, wait_for_db
from errors import AppError, ConflictError, NotFoundError, StoreError
from notifications import Broadcaster
from readiness import ReadinessSweeper
from redis_client import rate_limit, redis_client
from schemas import (
    CategoryCreate,
    CategoryUpdate,
    FeedbackCreate,
    OrderCreate,
    OrderItemStatusUpdate,
    OrderStatusUpdate,
    ProductCreate,
    ProductOptionCreate,
    ProductOptionUpdate,
    ProductUpdate,
    SettingUpdate,
    TableCreate,
    TableStatusUpdate,
    TableUpdate,
    UserCreate,
    UserLogin,
    WaiterCallCreate,
    WaiterCallStatusUpdate,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


app = FastAPI(title="QR Menu API")

origins = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost,http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(qr_codes.qr_code_dir(), exist_ok=True)
app.mount("/qrcodes", StaticFiles(directory=qr_codes.qr_code_dir(), check_dir=False), name="qrcodes")

broadcaster = Broadcaster(redis=redis_client)
sweeper: Optional[ReadinessSweeper] = None

ORDER_RATE_LIMIT = int(os.getenv("RATE_LIMIT_ORDERS", "20"))
WAITER_CALL_RATE_LIMIT = int(os.getenv("RATE_LIMIT_WAITER_CALLS", "5"))
FEEDBACK_RATE_LIMIT = int(os.getenv("RATE_LIMIT_FEEDBACK", "5"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))


def ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


# ========== Error envelope ==========

@app.exception_handler(AppError)
async def app_error_handler(request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.error})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        message = err.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "; ".join(messages) or "Invalid request"},
    )


# ========== Auth dependencies ==========

def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> models.User:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = authorization.replace("Bearer ", "")
    payload = auth.verify_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid token")

    username = payload.get("sub")
    if not username:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(models.User).filter(models.User.username == username).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_roles(*roles: str):
    def dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user

    return dependency


require_manager = require_roles("admin", "manager")
require_editor = require_roles("admin", "manager", "editor")
require_admin = require_roles("admin")


# ========== Lifecycle ==========

@app.on_event("startup")
def startup_event():
    global sweeper

    if wait_for_db():
        try:
            models.Base.metadata.create_all(bind=engine)
            init_restaurant_data()
            logger.info("Database initialised")
        except SQLAlchemyError as e:
            logger.error(f"Database initialisation failed: {e}")
    else:
        logger.error("Database was not ready at startup")

    if redis_client.is_available():
        logger.info("Redis is available")
    else:
        logger.warning("Redis is unavailable, caching and rate limiting are disabled")

    broadcaster.start_relay()

    if os.getenv("SERVER_SIDE_READINESS", "0").lower() in ("1", "true", "yes"):
        sweeper = ReadinessSweeper(
            SessionLocal,
            broadcaster,
            interval=float(os.getenv("READINESS_SWEEP_INTERVAL", "5")),
        )
        sweeper.start()


@app.on_event("shutdown")
def shutdown_event():
    broadcaster.stop_relay()
    if sweeper is not None:
        sweeper.stop()


# ========== Service endpoints ==========

@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running", "timestamp": datetime.utcnow().isoformat()}


@app.get("/api")
def api_info():
    return {
        "name": "QR Menu API",
        "version": "1.0.0",
        "websocket": "/ws",
        "endpoints": [
            "/api/orders",
            "/api/waiter-calls",
            "/api/tables",
            "/api/feedback",
            "/api/auth",
            "/api/categories",
            "/api/products",
            "/api/settings",
            "/api/statistics",
        ],
    }


@app.get("/cache/info")
def get_cache_info():
    return redis_client.get_cache_info()


# ========== Auth ==========

def serialize_user(user: models.User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
        "is_active": bool(user.is_active),
    }


@app.post("/api/auth/login")
def login(credentials: UserLogin, db: Session = Depends(get_db)):
    user = auth.authenticate_user(db, credentials.username, credentials.password)
    if not user:
        logger.warning(f"Failed login for {credentials.username}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect username or password")

    token = auth.create_access_token(data={"sub": user.username, "role": user.role})
    return ok({"access_token": token, "token_type": "bearer", "user": serialize_user(user)}, "Login successful")


@app.get("/api/auth/me")
def me(current_user: models.User = Depends(get_current_user)):
    return ok(serialize_user(current_user))


@app.post("/api/auth/register", status_code=201)
def register(user: UserCreate, db: Session = Depends(get_db), _: models.User = Depends(require_admin)):
    if db.query(models.User).filter(models.User.username == user.username).first():
        raise ConflictError("Username already registered")

    db_user = models.User(
        username=user.username,
        password=auth.get_password_hash(user.password),
        role=user.role,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )
    try:
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("User could not be created", error=str(e))

    logger.info(f"User {db_user.username} registered with role {db_user.role}")
    return ok(serialize_user(db_user), "User created successfully")


# ========== Orders ==========

@app.post("/api/orders", status_code=201)
def create_order(
    order: OrderCreate,
    db: Session = Depends(get_db),
    _: int = Depends(rate_limit(ORDER_RATE_LIMIT, RATE_LIMIT_WINDOW, "rate_limit:orders")),
):
    data = order_lifecycle.create_order(db, order, broadcaster)
    return ok(data, "Order created successfully")


@app.get("/api/orders")
def list_orders(
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    table_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_items: bool = False,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    return ok(order_lifecycle.list_orders(db, status_filter, table_id, start_date, end_date, include_items))


@app.get("/api/orders/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    return ok(order_lifecycle.serialize_order(order_lifecycle.get_order(db, order_id)))


@app.get("/api/orders/{order_id}/items")
def get_order_items(order_id: int, db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    items = order_lifecycle.get_order_items(db, order_id)
    return ok([order_lifecycle.serialize_item(i) for i in items])


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    update: OrderStatusUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    data = order_lifecycle.update_order_status(db, order_id, update.status, broadcaster)
    return ok(data, "Order status updated")


@app.put("/api/orders/{order_id}/items/{item_id}/status")
def update_order_item_status(
    order_id: int,
    item_id: int,
    update: OrderItemStatusUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    data = order_lifecycle.update_order_item_status(db, order_id, item_id, update.status)
    return ok(data, "Order item status updated")


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    order_lifecycle.delete_order(db, order_id)
    return ok(message="Order deleted")


# ========== Waiter calls ==========

@app.post("/api/waiter-calls", status_code=201)
def create_waiter_call(
    call: WaiterCallCreate,
    db: Session = Depends(get_db),
    _: int = Depends(rate_limit(WAITER_CALL_RATE_LIMIT, RATE_LIMIT_WINDOW, "rate_limit:waiter_calls")),
):
    data = waiter_call_manager.create_call(db, call.table_id, broadcaster)
    return ok(data, "Waiter has been called")


@app.get("/api/waiter-calls")
def list_waiter_calls(
    status_filter: Optional[str] = Query(None, alias="status"),
    table_id: Optional[int] = None,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    return ok(waiter_call_manager.list_calls(db, status_filter, table_id))


@app.get("/api/waiter-calls/active/count")
def count_active_waiter_calls(db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    return ok({"count": waiter_call_manager.count_active(db)})


@app.get("/api/waiter-calls/recent")
def recent_waiter_calls(limit: int = 10, db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    return ok(waiter_call_manager.recent_calls(db, limit))


@app.get("/api/waiter-calls/{call_id}")
def get_waiter_call(call_id: int, db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    return ok(waiter_call_manager.serialize_call(waiter_call_manager.get_call(db, call_id)))


@app.put("/api/waiter-calls/{call_id}/status")
def update_waiter_call_status(
    call_id: int,
    update: WaiterCallStatusUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    data = waiter_call_manager.update_call_status(db, call_id, update.status)
    return ok(data, "Waiter call status updated")


@app.delete("/api/waiter-calls/{call_id}")
def delete_waiter_call(call_id: int, db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    waiter_call_manager.delete_call(db, call_id)
    return ok(message="Waiter call deleted")


# ========== Tables ==========

@app.get("/api/tables")
def list_tables(
    status_filter: Optional[str] = Query(None, alias="status"),
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    return ok(table_service.list_tables(db, status_filter, is_active))


@app.get("/api/tables/{table_id}")
def get_table(table_id: int, db: Session = Depends(get_db)):
    return ok(table_service.serialize_table(table_service.get_table(db, table_id)))


@app.post("/api/tables", status_code=201)
def create_table(table: TableCreate, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    data = table_service.create_table(db, table.table_number, table.is_active, table.status)
    return ok(data, "Table created successfully")


@app.put("/api/tables/{table_id}")
def update_table(
    table_id: int,
    update: TableUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_manager),
):
    data = table_service.update_table(
        db,
        table_id,
        table_number=update.table_number.strip() if update.table_number else None,
        is_active=update.is_active,
        status=update.status,
        regenerate_qr=update.regenerate_qr,
    )
    return ok(data, "Table updated successfully")


@app.put("/api/tables/{table_id}/status")
def update_table_status(
    table_id: int,
    update: TableStatusUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    return ok(table_service.set_table_status(db, table_id, update.status), "Table status updated")


@app.delete("/api/tables/{table_id}")
def delete_table(table_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    table_service.delete_table(db, table_id)
    return ok(message="Table deleted successfully")


@app.get("/api/tables/{table_id}/qr-code")
def get_table_qr_code(table_id: int, db: Session = Depends(get_db)):
    table = table_service.get_table(db, table_id)
    return ok({
        "table_id": table.id,
        "table_number": table.table_number,
        "qr_code_url": table.qr_code_url,
        "menu_url": qr_codes.menu_url_for_table(table.id),
    })


@app.post("/api/tables/{table_id}/qr-code")
def regenerate_table_qr_code(table_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    return ok(table_service.regenerate_qr_code(db, table_id), "QR code regenerated")


# ========== Feedback ==========

def serialize_feedback(feedback: models.Feedback) -> dict:
    return {
        "id": feedback.id,
        "table_id": feedback.table_id,
        "table_number": feedback.table.table_number if feedback.table else None,
        "name": feedback.name,
        "email": feedback.email,
        "food_rating": feedback.food_rating,
        "service_rating": feedback.service_rating,
        "ambience_rating": feedback.ambience_rating,
        "price_rating": feedback.price_rating,
        "overall_rating": feedback.overall_rating,
        "comments": feedback.comments,
        "created_at": feedback.created_at.isoformat() if feedback.created_at else None,
    }


def _get_feedback(db: Session, feedback_id: int) -> models.Feedback:
    feedback = db.query(models.Feedback).filter(models.Feedback.id == feedback_id).first()
    if not feedback:
        raise NotFoundError("Feedback not found")
    return feedback


@app.post("/api/feedback", status_code=201)
def create_feedback(
    payload: FeedbackCreate,
    db: Session = Depends(get_db),
    _: int = Depends(rate_limit(FEEDBACK_RATE_LIMIT, RATE_LIMIT_WINDOW, "rate_limit:feedback")),
):
    if payload.table_id is not None:
        table_service.get_table(db, payload.table_id)

    feedback = models.Feedback(**payload.dict())
    try:
        db.add(feedback)
        db.commit()
        db.refresh(feedback)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Feedback could not be saved", error=str(e))

    return ok(serialize_feedback(feedback), "Thank you for your feedback")


@app.get("/api/feedback")
def list_feedback(
    table_id: Optional[int] = None,
    min_rating: Optional[int] = None,
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    query = db.query(models.Feedback)
    if table_id is not None:
        query = query.filter(models.Feedback.table_id == table_id)
    if min_rating is not None:
        query = query.filter(models.Feedback.overall_rating >= min_rating)
    rows = query.order_by(models.Feedback.created_at.desc(), models.Feedback.id.desc()).all()
    return ok([serialize_feedback(f) for f in rows])


def feedback_summary(db: Session) -> dict:
    averages = db.query(
        func.count(models.Feedback.id),
        func.avg(models.Feedback.overall_rating),
        func.avg(models.Feedback.food_rating),
        func.avg(models.Feedback.service_rating),
        func.avg(models.Feedback.ambience_rating),
        func.avg(models.Feedback.price_rating),
    ).one()
    distribution = dict(
        db.query(models.Feedback.overall_rating, func.count(models.Feedback.id))
        .group_by(models.Feedback.overall_rating)
        .all()
    )

    def rounded(value):
        return round(float(value), 2) if value is not None else None

    return {
        "total": averages[0],
        "average_overall": rounded(averages[1]),
        "average_food": rounded(averages[2]),
        "average_service": rounded(averages[3]),
        "average_ambience": rounded(averages[4]),
        "average_price": rounded(averages[5]),
        "distribution": {str(r): distribution.get(r, 0) for r in range(1, 6)},
    }


@app.get("/api/feedback/statistics")
def feedback_statistics(db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    return ok(feedback_summary(db))


@app.get("/api/feedback/recent")
def recent_feedback(
    limit: int = Query(5, ge=1, le=100),
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_user),
):
    rows = db.query(models.Feedback).order_by(
        models.Feedback.created_at.desc(), models.Feedback.id.desc()
    ).limit(limit).all()
    return ok([serialize_feedback(f) for f in rows])


@app.get("/api/feedback/{feedback_id}")
def get_feedback(feedback_id: int, db: Session = Depends(get_db), _: models.User = Depends(get_current_user)):
    return ok(serialize_feedback(_get_feedback(db, feedback_id)))


@app.delete("/api/feedback/{feedback_id}")
def delete_feedback(feedback_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    feedback = _get_feedback(db, feedback_id)
    try:
        db.delete(feedback)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Feedback could not be deleted", error=str(e))
    return ok(message="Feedback deleted")


# ========== Menu ==========

def serialize_category(category: models.Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "is_active": bool(category.is_active),
        "sort_order": category.sort_order,
    }


def serialize_product_option(option: models.ProductOption) -> dict:
    return {
        "id": option.id,
        "product_id": option.product_id,
        "name": option.name,
        "price_modifier": float(option.price_modifier or 0),
        "is_active": bool(option.is_active),
        "is_required": bool(option.is_required),
        "sort_order": option.sort_order,
    }


def serialize_product(product: models.Product) -> dict:
    return {
        "id": product.id,
        "category_id": product.category_id,
        "category_name": product.category.name if product.category else None,
        "name": product.name,
        "description": product.description,
        "price": float(product.price),
        "preparation_time": product.preparation_time,
        "is_active": bool(product.is_active),
        "is_featured": bool(product.is_featured),
        "sort_order": product.sort_order,
        "options": [serialize_product_option(o) for o in product.options if o.is_active],
    }


def _get_category(db: Session, category_id: int) -> models.Category:
    category = db.query(models.Category).filter(models.Category.id == category_id).first()
    if not category:
        raise NotFoundError("Category not found")
    return category


def _get_product(db: Session, product_id: int) -> models.Product:
    product = db.query(models.Product).filter(models.Product.id == product_id).first()
    if not product:
        raise NotFoundError("Product not found")
    return product


def _get_product_option(db: Session, option_id: int) -> models.ProductOption:
    option = db.query(models.ProductOption).filter(models.ProductOption.id == option_id).first()
    if not option:
        raise NotFoundError("Product option not found")
    return option


def _save_menu_change(db: Session, failure: str, instance=None) -> None:
    """Commit a menu write and drop the cached product list."""
    try:
        db.commit()
        if instance is not None:
            db.refresh(instance)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(failure, error=str(e))
    redis_client.invalidate_products_cache()


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    categories = db.query(models.Category).filter(models.Category.is_active.is_(True)).order_by(
        models.Category.sort_order, models.Category.id
    ).all()
    return ok([serialize_category(c) for c in categories])


@app.get("/api/categories/{category_id}")
def get_category(category_id: int, db: Session = Depends(get_db)):
    return ok(serialize_category(_get_category(db, category_id)))


@app.post("/api/categories", status_code=201)
def create_category(category: CategoryCreate, db: Session = Depends(get_db), _: models.User = Depends(require_editor)):
    db_category = models.Category(**category.dict())
    db.add(db_category)
    _save_menu_change(db, "Category could not be created", db_category)
    return ok(serialize_category(db_category), "Category created successfully")


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    update: CategoryUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_editor),
):
    category = _get_category(db, category_id)
    for field, value in update.dict(exclude_unset=True).items():
        if value is not None:
            setattr(category, field, value)
    _save_menu_change(db, "Category could not be updated", category)
    return ok(serialize_category(category), "Category updated successfully")


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    category = _get_category(db, category_id)
    if db.query(models.Product).filter(models.Product.category_id == category_id).count() > 0:
        raise ConflictError("This category still has products. Delete or move them first.")

    db.delete(category)
    _save_menu_change(db, "Category could not be deleted")
    return ok(message="Category deleted successfully")


@app.get("/api/products")
def list_products(category_id: Optional[int] = None, db: Session = Depends(get_db)):
    if category_id is None:
        cached = redis_client.get_cached_products()
        if cached is not None:
            return ok(cached)

    query = db.query(models.Product).filter(models.Product.is_active.is_(True))
    if category_id is not None:
        query = query.filter(models.Product.category_id == category_id)
    products = [serialize_product(p) for p in query.order_by(models.Product.sort_order, models.Product.id).all()]

    if category_id is None:
        redis_client.cache_products(products)
    return ok(products)


@app.get("/api/products/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_db)):
    return ok(serialize_product(_get_product(db, product_id)))


@app.post("/api/products", status_code=201)
def create_product(product: ProductCreate, db: Session = Depends(get_db), _: models.User = Depends(require_editor)):
    _get_category(db, product.category_id)

    db_product = models.Product(**product.dict(exclude={"options"}))
    db_product.options = [models.ProductOption(**option.dict()) for option in product.options]
    db.add(db_product)
    _save_menu_change(db, "Product could not be created", db_product)
    return ok(serialize_product(db_product), "Product created successfully")


@app.put("/api/products/options/{option_id}")
def update_product_option(
    option_id: int,
    update: ProductOptionUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_editor),
):
    option = _get_product_option(db, option_id)
    for field, value in update.dict(exclude_unset=True).items():
        if value is not None:
            setattr(option, field, value)
    _save_menu_change(db, "Product option could not be updated", option)
    return ok(serialize_product_option(option), "Product option updated successfully")


@app.delete("/api/products/options/{option_id}")
def delete_product_option(option_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_editor)):
    option = _get_product_option(db, option_id)

    ordered = db.query(models.OrderItemOption).filter(
        models.OrderItemOption.product_option_id == option_id
    ).count()
    if ordered:
        option.is_active = False
        _save_menu_change(db, "Product option could not be retired")
        return ok(message="Product option is part of past orders and has been deactivated")

    db.delete(option)
    _save_menu_change(db, "Product option could not be deleted")
    return ok(message="Product option deleted successfully")


@app.put("/api/products/{product_id}")
def update_product(
    product_id: int,
    update: ProductUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_editor),
):
    product = _get_product(db, product_id)
    changes = {k: v for k, v in update.dict(exclude_unset=True).items() if v is not None}
    if "category_id" in changes:
        _get_category(db, changes["category_id"])

    for field, value in changes.items():
        setattr(product, field, value)
    _save_menu_change(db, "Product could not be updated", product)
    return ok(serialize_product(product), "Product updated successfully")


def _product_was_ordered(db: Session, product: models.Product) -> bool:
    if db.query(models.OrderItem).filter(models.OrderItem.product_id == product.id).count() > 0:
        return True
    option_ids = [o.id for o in product.options]
    return bool(option_ids) and db.query(models.OrderItemOption).filter(
        models.OrderItemOption.product_option_id.in_(option_ids)
    ).count() > 0


@app.delete("/api/products/{product_id}")
def delete_product(product_id: int, db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    product = _get_product(db, product_id)

    # order items keep pointing at the product, so an ordered product is only retired
    if _product_was_ordered(db, product):
        product.is_active = False
        _save_menu_change(db, "Product could not be retired")
        logger.info(f"Product {product_id} retired, it appears in past orders")
        return ok(message="Product is part of past orders and has been deactivated")

    db.delete(product)
    _save_menu_change(db, "Product could not be deleted")
    return ok(message="Product deleted successfully")


@app.get("/api/products/{product_id}/options")
def list_product_options(product_id: int, db: Session = Depends(get_db)):
    return ok([serialize_product_option(o) for o in _get_product(db, product_id).options])


@app.post("/api/products/{product_id}/options", status_code=201)
def add_product_option(
    product_id: int,
    option: ProductOptionCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_editor),
):
    _get_product(db, product_id)
    db_option = models.ProductOption(product_id=product_id, **option.dict())
    db.add(db_option)
    _save_menu_change(db, "Product option could not be created", db_option)
    return ok(serialize_product_option(db_option), "Product option created successfully")


# ========== Settings ==========

def serialize_setting(setting: models.SiteSetting) -> dict:
    return {
        "setting_key": setting.setting_key,
        "setting_value": setting.setting_value,
        "setting_type": setting.setting_type,
        "is_public": bool(setting.is_public),
    }


@app.get("/api/settings")
def list_settings(db: Session = Depends(get_db)):
    settings = db.query(models.SiteSetting).filter(models.SiteSetting.is_public.is_(True)).all()
    return ok({s.setting_key: s.setting_value for s in settings})


@app.get("/api/settings/{key}")
def get_setting(key: str, db: Session = Depends(get_db)):
    setting = db.query(models.SiteSetting).filter(models.SiteSetting.setting_key == key).first()
    if not setting or not setting.is_public:
        raise NotFoundError("Setting not found")
    return ok(serialize_setting(setting))


@app.put("/api/settings/{key}")
def update_setting(
    key: str,
    update: SettingUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(require_manager),
):
    setting = db.query(models.SiteSetting).filter(models.SiteSetting.setting_key == key).first()
    if not setting:
        setting = models.SiteSetting(setting_key=key)
        db.add(setting)

    setting.setting_value = update.setting_value
    setting.setting_type = update.setting_type
    setting.is_public = update.is_public
    try:
        db.commit()
        db.refresh(setting)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Setting could not be saved", error=str(e))
    return ok(serialize_setting(setting), "Setting saved")


# ========== Statistics ==========

@app.get("/api/statistics/dashboard")
def dashboard_statistics(db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    by_status = dict(
        db.query(models.Order.status, func.count(models.Order.id)).group_by(models.Order.status).all()
    )
    today_start = datetime.combine(datetime.utcnow().date(), time.min)
    revenue = db.query(func.coalesce(func.sum(models.Order.total_amount), 0)).filter(
        models.Order.status == models.OrderStatus.COMPLETED.value
    ).scalar()
    average_rating = db.query(func.avg(models.Feedback.overall_rating)).scalar()

    return ok({
        "total_orders": sum(by_status.values()),
        "orders_by_status": {s.value: by_status.get(s.value, 0) for s in models.OrderStatus},
        "active_orders": sum(by_status.get(s, 0) for s in models.ACTIVE_ORDER_STATUSES),
        "today_orders": db.query(models.Order).filter(models.Order.created_at >= today_start).count(),
        "revenue": float(revenue or 0),
        "active_waiter_calls": waiter_call_manager.count_active(db),
        "tables_total": db.query(models.RestaurantTable).count(),
        "tables_occupied": db.query(models.RestaurantTable).filter(
            models.RestaurantTable.status == models.TableStatus.OCCUPIED.value
        ).count(),
        "average_rating": round(float(average_rating), 2) if average_rating is not None else None,
    })


# period -> (look-back window, bucket format)
SALES_PERIODS = {
    "day": (timedelta(days=1), "%Y-%m-%d %H:00"),
    "week": (timedelta(days=7), "%Y-%m-%d"),
    "month": (timedelta(days=30), "%Y-%m-%d"),
    "year": (timedelta(days=365), "%Y-%m"),
}

TOP_PRODUCT_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "all": None,
}


def _period_choice(period: str, choices: dict):
    if period not in choices:
        raise HTTPException(status_code=400, detail=f"period must be one of: {', '.join(choices)}")
    return choices[period]


@app.get("/api/statistics/recent-orders")
def recent_orders_statistics(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    _: models.User = Depends(require_manager),
):
    orders = db.query(models.Order).order_by(models.Order.created_at.desc(), models.Order.id.desc()).limit(limit).all()
    return ok([order_lifecycle.serialize_order(o, include_items=False) for o in orders])


@app.get("/api/statistics/sales")
def sales_statistics(period: str = "week", db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    window, bucket_format = _period_choice(period, SALES_PERIODS)
    orders = db.query(models.Order).filter(
        models.Order.created_at >= datetime.utcnow() - window,
        models.Order.status != models.OrderStatus.CANCELLED.value,
    ).order_by(models.Order.created_at).all()

    buckets = {}
    for order in orders:
        bucket = buckets.setdefault(order.created_at.strftime(bucket_format), {"orders": 0, "revenue": 0.0})
        bucket["orders"] += 1
        bucket["revenue"] += float(order.total_amount or 0)

    total_revenue = sum(b["revenue"] for b in buckets.values())
    return ok({
        "period": period,
        "total_orders": len(orders),
        "total_revenue": round(total_revenue, 2),
        "average_order": round(total_revenue / len(orders), 2) if orders else 0.0,
        "buckets": [
            {"date": key, "orders": b["orders"], "revenue": round(b["revenue"], 2)}
            for key, b in sorted(buckets.items())
        ],
    })


@app.get("/api/statistics/top-products")
def top_products_statistics(
    period: str = "month",
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    _: models.User = Depends(require_manager),
):
    window = _period_choice(period, TOP_PRODUCT_PERIODS)
    order_count = func.count(models.OrderItem.id)
    revenue = func.coalesce(func.sum(models.OrderItem.price * models.OrderItem.quantity), 0)

    query = db.query(
        models.Product.id,
        models.Product.name,
        order_count,
        func.coalesce(func.sum(models.OrderItem.quantity), 0),
        revenue,
    ).join(models.OrderItem, models.OrderItem.product_id == models.Product.id).join(
        models.Order, models.OrderItem.order_id == models.Order.id
    ).filter(models.Order.status != models.OrderStatus.CANCELLED.value)
    if window is not None:
        query = query.filter(models.Order.created_at >= datetime.utcnow() - window)

    rows = query.group_by(models.Product.id, models.Product.name).order_by(
        order_count.desc(), revenue.desc()
    ).limit(limit).all()
    return ok([
        {
            "id": product_id,
            "name": name,
            "order_count": count,
            "quantity": int(quantity),
            "total_revenue": round(float(total), 2),
        }
        for product_id, name, count, quantity, total in rows
    ])


@app.get("/api/statistics/feedback")
def feedback_statistics_summary(db: Session = Depends(get_db), _: models.User = Depends(require_manager)):
    return ok(feedback_summary(db))


# ========== Notifications ==========

async def _forward_events(websocket: WebSocket, subscription) -> None:
    while True:
        event = await subscription.get()
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError):
            return


@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket):
    # registered before the handshake completes so no event published after connect is missed
    subscription = broadcaster.registry.subscribe()
    await websocket.accept()
    logger.info(f"Notification viewer connected ({len(broadcaster.registry)} total)")

    forward = asyncio.create_task(_forward_events(websocket, subscription))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Notification viewer disconnected")
    finally:
        forward.cancel()
        broadcaster.registry.unsubscribe(subscription)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
