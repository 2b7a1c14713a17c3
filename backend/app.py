import math
import os
import re
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple
from uuid import uuid4

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename

import mongodb
from cart_formatter import (
    DEFAULT_LOCALE,
    PopulatedProduct,
    UnresolvedProduct,
    format_cart,
)
from format_response import format_document

load_dotenv()

REQUIRED_ENV_VARS = ("DB_CONNECTION_STRING", "JWT_SECRET")
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
ALLOWED_USER_ROLES = {"admin", "customer"}
PRODUCT_SORTS = {
    "newest": [("created_at", DESCENDING), ("_id", DESCENDING)],
    "price_asc": [("price", ASCENDING), ("_id", ASCENDING)],
    "price_desc": [("price", DESCENDING), ("_id", DESCENDING)],
    "bestsellers": [("salesCount", DESCENDING), ("_id", DESCENDING)],
}
MAX_PAGE_SIZE = 100
MAX_UPLOAD_FILES = 5
MIN_PASSWORD_LENGTH = 6


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # --- Configuration ---
    app.config["ENVIRONMENT"] = (os.getenv("APP_ENV") or "development").strip().lower()
    app.config["MONGO_URI"] = mongodb.get_connection_string()
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_DAYS", "7"))
    )
    app.config["JWT_ERROR_MESSAGE_KEY"] = "message"
    app.config["MAX_FILE_SIZE"] = int(os.getenv("MAX_FILE_SIZE", "5242880"))
    app.config["UPLOAD_FOLDER"] = os.getenv("UPLOAD_PATH") or os.path.join(
        app.root_path, "uploads"
    )
    app.config["PRODUCT_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    app.config["ADMIN_EMAIL"] = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
    app.config["CART_LOCALE"] = (os.getenv("CART_LOCALE") or DEFAULT_LOCALE).strip()
    app.config["FRONTEND_URL"] = (os.getenv("FRONTEND_URL") or "").strip()

    if test_config:
        app.config.update(test_config)

    app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_FILE_SIZE"] * MAX_UPLOAD_FILES
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    app.logger.setLevel((os.getenv("LOG_LEVEL") or "INFO").upper())
    is_development = app.config["ENVIRONMENT"] == "development"
    is_production = app.config["ENVIRONMENT"] == "production"

    missing_env_vars = [name for name in REQUIRED_ENV_VARS if not os.getenv(name)]
    if missing_env_vars and not app.config.get("TESTING"):
        app.logger.warning(
            "Missing required environment variables: %s", ", ".join(missing_env_vars)
        )

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        app.config["FRONTEND_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    for origin in cors_extra.split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins)
    JWTManager(app)

    if database is None:
        mongo = PyMongo(app, **mongodb.client_options())
        database = mongo.db
        if database is None:
            database = mongodb.get_database(mongo.cx)
        app.logger.info(
            "MongoDB host and database: %s",
            mongodb.describe_connection_string(app.config["MONGO_URI"]),
        )
    db = database
    started_at = time.time()

    def ensure_indexes():
        try:
            db.users.create_index("email", unique=True)
            db.categories.create_index("name", unique=True)
            db.carts.create_index("user", unique=True)
            db.products.create_index([("created_at", DESCENDING)])
            db.orders.create_index([("user", ASCENDING), ("created_at", DESCENDING)])
        except PyMongoError as exc:
            app.logger.warning(
                "Database connection failed, but the server will continue to start: %s",
                exc,
            )

    ensure_indexes()

    # --- Helpers ---

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_int(value, default=0):
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return default

    def parse_bool(value) -> bool:
        if isinstance(value, bool):
            return value
        return str(value or "").strip().lower() in {"1", "true", "yes", "on"}

    def normalize_object_id_value(value):
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def get_request_payload() -> Dict:
        if request.form:
            return request.form.to_dict()
        return request.get_json(silent=True) or {}

    def get_user_role(user_document) -> str:
        if not user_document:
            return "customer"
        admin_email = app.config["ADMIN_EMAIL"]
        if admin_email and normalize_email(user_document.get("email")) == admin_email:
            return "admin"
        role = str(user_document.get("role") or "").strip().lower()
        return role if role in ALLOWED_USER_ROLES else "customer"

    def get_current_user():
        current_email = normalize_email(get_jwt_identity())
        if not current_email:
            return None
        return db.users.find_one({"email": current_email})

    def require_user():
        current_user = get_current_user()
        if not current_user:
            return None, (jsonify({"message": "User not found."}), 401)
        return current_user, None

    def require_admin_user():
        current_user, user_error = require_user()
        if user_error:
            return None, user_error
        if get_user_role(current_user) != "admin":
            return (
                None,
                (
                    jsonify({"message": "Administrator access is required for this action."}),
                    403,
                ),
            )
        return current_user, None

    def serialize_user(user_document) -> Dict:
        if not user_document:
            return {}
        serialized = format_document(user_document)
        serialized["role"] = get_user_role(user_document)
        return {
            "id": serialized.get("id"),
            "name": serialized.get("name", "") or "",
            "email": serialized.get("email", "") or "",
            "phone": serialized.get("phone", "") or "",
            "address": serialized.get("address") or {},
            "role": serialized["role"],
            "created_at": serialized.get("created_at"),
        }

    def issue_token(user_document) -> str:
        return create_access_token(
            identity=normalize_email(user_document.get("email")),
            additional_claims={"role": get_user_role(user_document)},
        )

    def fetch_document(collection, document_id: str, label: str):
        object_id = normalize_object_id_value(document_id)
        if object_id is None:
            return None, (jsonify({"message": f"Invalid {label.lower()} identifier."}), 400)
        document = collection.find_one({"_id": object_id})
        if not document:
            return None, (jsonify({"message": f"{label} not found."}), 404)
        return document, None

    ADDRESS_FIELDS = ("full_name", "phone", "address", "city", "postal_code")
    ADDRESS_FIELD_ALIASES = {
        "full_name": ("full_name", "fullName", "name"),
        "phone": ("phone", "phone_number", "phoneNumber"),
        "address": ("address", "street", "line1", "address_line_1"),
        "city": ("city", "town"),
        "postal_code": ("postal_code", "postalCode", "postcode", "zip"),
    }
    ADDRESS_REQUIRED_FIELDS = ("address", "city")

    def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(payload, dict):
            return {}

        normalized: Dict[str, str] = {}
        for field in ADDRESS_FIELDS:
            value = None
            for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
                if alias in payload:
                    value = payload.get(alias)
                    break
            if value is None:
                continue
            trimmed = str(value).strip()
            if trimmed:
                normalized[field] = trimmed
        return normalized

    def is_complete_address(payload: Optional[Dict]) -> bool:
        normalized = normalize_address_payload(payload)
        return all(normalized.get(field) for field in ADDRESS_REQUIRED_FIELDS)

    # Uploads

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PRODUCT_ALLOWED_EXTENSIONS"]

    def max_file_size_label() -> str:
        return f"{app.config['MAX_FILE_SIZE'] // (1024 * 1024)}MB"

    def save_product_image(image_file):
        original_filename = secure_filename(image_file.filename or "")
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return None, "Only images are allowed!"

        image_file.stream.seek(0, os.SEEK_END)
        size = image_file.stream.tell()
        image_file.stream.seek(0)
        if size > app.config["MAX_FILE_SIZE"]:
            return (
                None,
                f"File size too large. Maximum size is {max_file_size_label()}.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"images-{uuid4().hex}{extension}"
        destination = os.path.join(app.config["UPLOAD_FOLDER"], unique_filename)

        try:
            image_file.save(destination)
        except OSError as exc:
            app.logger.error("Unable to store upload %s: %s", original_filename, exc)
            return None, "We could not store the uploaded image. Please try again."

        app.logger.debug("Stored upload %s as %s", original_filename, unique_filename)
        return f"/uploads/{unique_filename}", None

    def save_product_images(image_files):
        saved_urls: List[str] = []
        image_files = [
            image_file
            for image_file in image_files or []
            if image_file and getattr(image_file, "filename", "")
        ]
        if len(image_files) > MAX_UPLOAD_FILES:
            return [], "Too many files uploaded."

        for image_file in image_files:
            image_url, image_error = save_product_image(image_file)
            if image_error:
                remove_product_images(saved_urls)
                return [], image_error
            saved_urls.append(image_url)

        return saved_urls, None

    def remove_product_images(image_urls):
        for image_url in image_urls or []:
            if not isinstance(image_url, str) or not image_url.startswith("/uploads/"):
                continue
            filename = os.path.basename(image_url)
            target = os.path.join(app.config["UPLOAD_FOLDER"], filename)
            try:
                os.remove(target)
            except FileNotFoundError:
                continue
            except OSError as exc:
                app.logger.warning("Unable to remove upload %s: %s", filename, exc)

    # Catalog

    def fetch_categories_by_ids(category_ids) -> Dict[ObjectId, Dict]:
        normalized_ids: List[ObjectId] = []
        seen: Set[ObjectId] = set()
        for value in category_ids or []:
            current_id = normalize_object_id_value(value)
            if current_id is None or current_id in seen:
                continue
            seen.add(current_id)
            normalized_ids.append(current_id)
        if not normalized_ids:
            return {}
        category_documents = db.categories.find({"_id": {"$in": normalized_ids}})
        return {document["_id"]: document for document in category_documents}

    def serialize_product(product_document, category_map=None) -> Dict:
        serialized = format_document(product_document)
        serialized.setdefault("images", [])
        serialized.setdefault("image_url", "")
        serialized["price"] = round(safe_float(product_document.get("price"), 0.0), 2)
        serialized["stock_quantity"] = max(
            0, safe_int(product_document.get("stockQuantity"), 0)
        )
        serialized["is_amazing_offer"] = bool(product_document.get("isAmazingOffer"))
        serialized["sales_count"] = max(0, safe_int(product_document.get("salesCount"), 0))

        category_id = product_document.get("category")
        if category_map is None:
            category_map = fetch_categories_by_ids([category_id])
        category_document = category_map.get(category_id) if category_id else None
        serialized["category"] = (
            {
                "id": str(category_document["_id"]),
                "name": category_document.get("name", ""),
            }
            if category_document
            else None
        )
        return serialized

    def serialize_products(product_documents) -> List[Dict]:
        product_documents = list(product_documents)
        category_map = fetch_categories_by_ids(
            [document.get("category") for document in product_documents]
        )
        return [
            serialize_product(document, category_map=category_map)
            for document in product_documents
        ]

    def serialize_category(category_document, product_counts=None) -> Dict:
        serialized = format_document(category_document)
        serialized.setdefault("description", "")
        product_count = 0
        if product_counts is not None:
            product_count = int(product_counts.get(category_document.get("_id"), 0) or 0)
        serialized["product_count"] = product_count
        return serialized

    def build_category_product_counts() -> Dict[ObjectId, int]:
        counts: Dict[ObjectId, int] = {}
        pipeline = [
            {"$match": {"category": {"$ne": None}}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        ]
        for entry in db.products.aggregate(pipeline):
            category_id = entry.get("_id")
            if category_id:
                counts[category_id] = safe_int(entry.get("count"), 0)
        return counts

    def normalize_product_payload(payload: Dict, partial: bool = False):
        """Validate product fields; returns (fields, error_message)."""
        fields: Dict[str, object] = {}

        if not partial or "name" in payload:
            name = " ".join(str(payload.get("name") or "").split())
            if not name:
                return None, "A product name is required."
            fields["name"] = name

        if "description" in payload:
            fields["description"] = str(payload.get("description") or "").strip()
        elif not partial:
            fields["description"] = ""

        if not partial or "price" in payload:
            try:
                price_value = round(float(payload.get("price")), 2)
            except (TypeError, ValueError):
                return None, "Price must be a valid number."
            if not math.isfinite(price_value) or price_value <= 0:
                return None, "Price must be greater than zero."
            fields["price"] = price_value

        stock_key = next(
            (key for key in ("stock_quantity", "stockQuantity") if key in payload), None
        )
        if stock_key:
            stock_value = safe_int(payload.get(stock_key), -1)
            if stock_value < 0:
                return None, "Stock quantity must be zero or more."
            fields["stockQuantity"] = stock_value
        elif not partial:
            fields["stockQuantity"] = 0

        offer_key = next(
            (key for key in ("is_amazing_offer", "isAmazingOffer") if key in payload),
            None,
        )
        if offer_key:
            fields["isAmazingOffer"] = parse_bool(payload.get(offer_key))
        elif not partial:
            fields["isAmazingOffer"] = False

        category_key = next(
            (key for key in ("category", "category_id", "categoryId") if key in payload),
            None,
        )
        if category_key:
            raw_category = payload.get(category_key)
            if raw_category in (None, ""):
                fields["category"] = None
            else:
                category_id = normalize_object_id_value(raw_category)
                if category_id is None or not db.categories.find_one({"_id": category_id}):
                    return None, "The selected category does not exist."
                fields["category"] = category_id

        if "images" in payload and isinstance(payload.get("images"), list):
            fields["images"] = [str(url) for url in payload["images"] if url]

        return fields, None

    # Cart

    def get_cart_document(user_id: ObjectId) -> Dict:
        cart_document = db.carts.find_one({"user": user_id})
        if cart_document:
            return cart_document
        timestamp = datetime.utcnow()
        cart_document = {
            "user": user_id,
            "items": [],
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            insert_result = db.carts.insert_one(dict(cart_document))
            cart_document["_id"] = insert_result.inserted_id
        except DuplicateKeyError:
            cart_document = db.carts.find_one({"user": user_id})
        return cart_document

    def save_cart_items(cart_document, items: List[Dict]):
        db.carts.update_one(
            {"_id": cart_document["_id"]},
            {"$set": {"items": items, "updated_at": datetime.utcnow()}},
        )

    def populate_cart(cart_document) -> Dict:
        items = cart_document.get("items") or []
        product_ids = [
            object_id
            for object_id in (
                normalize_object_id_value(item.get("product")) for item in items
            )
            if object_id is not None
        ]
        product_map = (
            {
                document["_id"]: document
                for document in db.products.find({"_id": {"$in": product_ids}})
            }
            if product_ids
            else {}
        )

        populated_items = []
        for item in items:
            reference = item.get("product")
            product_document = product_map.get(normalize_object_id_value(reference))
            populated_items.append(
                {
                    **item,
                    "product": PopulatedProduct(product_document)
                    if product_document
                    else UnresolvedProduct(reference),
                }
            )
        return {**cart_document, "items": populated_items}

    def cart_response(user_id: ObjectId, message: Optional[str] = None, status: int = 200):
        cart_document = db.carts.find_one({"user": user_id})
        formatted = format_cart(
            populate_cart(cart_document) if cart_document else None,
            locale=app.config["CART_LOCALE"],
        )
        if message:
            formatted["message"] = message
        return jsonify(formatted), status

    # Orders

    def serialize_order(order_document, customer=None) -> Dict:
        serialized = format_document(order_document)
        serialized["total_price"] = round(
            safe_float(order_document.get("total_price"), 0.0), 2
        )
        if customer:
            serialized["customer"] = {
                "id": str(customer.get("_id")),
                "name": customer.get("name", "") or "",
                "email": customer.get("email", "") or "",
            }
        return serialized

    def adjust_stock(order_items: List[Dict], direction: int):
        for item in order_items:
            product_id = normalize_object_id_value(item.get("product"))
            quantity = safe_int(item.get("quantity"), 0)
            if product_id is None or quantity <= 0:
                continue
            db.products.update_one(
                {"_id": product_id},
                {
                    "$inc": {
                        "stockQuantity": direction * quantity,
                        "salesCount": -direction * quantity,
                    }
                },
            )

    def reserve_stock(order_items: List[Dict]) -> Optional[Dict]:
        """Decrement stock for every line; returns the failing line on conflict."""
        reserved: List[Dict] = []
        for item in order_items:
            result = db.products.update_one(
                {"_id": item["product"], "stockQuantity": {"$gte": item["quantity"]}},
                {"$inc": {"stockQuantity": -item["quantity"], "salesCount": item["quantity"]}},
            )
            if result.matched_count == 0:
                adjust_stock(reserved, 1)
                return item
            reserved.append(item)
        return None

    def build_order_items(cart_items: List[Dict]) -> Tuple[Optional[List[Dict]], Optional[Tuple]]:
        product_ids = [
            object_id
            for object_id in (
                normalize_object_id_value(item.get("product")) for item in cart_items
            )
            if object_id is not None
        ]
        product_map = {
            document["_id"]: document
            for document in db.products.find({"_id": {"$in": product_ids}})
        } if product_ids else {}

        order_items: List[Dict] = []
        for item in cart_items:
            quantity = safe_int(item.get("quantity"), 0)
            if quantity <= 0:
                continue
            product_document = product_map.get(normalize_object_id_value(item.get("product")))
            if not product_document:
                return None, (
                    jsonify({"message": "A product in your cart is no longer available."}),
                    400,
                )
            stock = max(0, safe_int(product_document.get("stockQuantity"), 0))
            if quantity > stock:
                return None, (
                    jsonify(
                        {
                            "message": f'Only {stock} left in stock for "{product_document.get("name", "")}".',
                            "product_id": str(product_document["_id"]),
                        }
                    ),
                    400,
                )
            images = product_document.get("images") or []
            order_items.append(
                {
                    "product": product_document["_id"],
                    "name": product_document.get("name", ""),
                    "price": round(safe_float(product_document.get("price"), 0.0), 2),
                    "quantity": quantity,
                    "image_url": images[0] if images else "",
                }
            )
        return order_items, None

    def can_view_order(order_document, user_document) -> bool:
        if not order_document or not user_document:
            return False
        if get_user_role(user_document) == "admin":
            return True
        return order_document.get("user") == user_document.get("_id")

    # --- Middleware ---

    if is_development:

        @app.before_request
        def log_request():
            app.logger.info(
                "%s %s - Origin: %s",
                request.method,
                request.path,
                request.headers.get("Origin") or "none",
            )

    @app.after_request
    def apply_security_headers(response):
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Error handlers ---

    def error_payload(message: str, error: Exception) -> Dict:
        payload = {"message": message, "timestamp": datetime.utcnow().isoformat() + "Z"}
        payload["error"] = str(error) if is_development else "Internal server error"
        return payload

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(error):
        return (
            jsonify({"message": f"File size too large. Maximum size is {max_file_size_label()}."}),
            400,
        )

    @app.errorhandler(PyMongoError)
    def handle_database_error(error):
        app.logger.error("Database error on %s %s: %s", request.method, request.path, error)
        return jsonify(error_payload("Database connection error", error)), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        message = "Route not found." if error.code == 404 else error.description
        return jsonify({"message": message}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify(error_payload("Something went wrong!", error)), 500

    # --- ROUTES ---

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        response = send_from_directory(app.config["UPLOAD_FOLDER"], filename)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Access-Control-Max-Age"] = "86400"
        return response

    @app.route("/")
    def index():
        return jsonify(
            {
                "message": "E-commerce backend API is running.",
                "health": "/api/health",
                "database_test": "/api/test-db",
            }
        )

    @app.route("/api/health")
    def health():
        database_state = mongodb.connection_state(db)
        return jsonify(
            {
                "status": "OK",
                "message": "E-commerce API is running",
                "timestamp": datetime.utcnow().isoformat() + "Z",
                "uptime": round(time.time() - started_at, 2),
                "environment": app.config["ENVIRONMENT"],
                "database": database_state,
                "configuration": {
                    "missing_env_vars": [
                        name for name in REQUIRED_ENV_VARS if not os.getenv(name)
                    ],
                    "frontend_url": app.config["FRONTEND_URL"] or None,
                },
            }
        )

    @app.route("/api/test-db")
    def test_database():
        database_state = mongodb.connection_state(db)
        if database_state["state"] != "connected":
            return (
                jsonify(
                    {
                        "status": "error",
                        "message": "Database not connected",
                        "connection_state": database_state["state"],
                    }
                ),
                503,
            )
        return jsonify(
            {
                "status": "success",
                "message": "Database connection is working properly",
                "user_count": db.users.count_documents({}),
                "connection_state": database_state["state"],
            }
        )

    @app.route("/api/test")
    def test_endpoint():
        return jsonify({"message": "Server is working"})

    @app.route("/api/test-orders")
    def test_orders_endpoint():
        return jsonify({"message": "Test endpoint working"})

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))
        phone = str(payload.get("phone", "")).strip()

        if not email or not name or not password:
            return (
                jsonify({"message": "Name, email, and password are required to create an account."}),
                400,
            )
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400
        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"message": f"Passwords must be at least {MIN_PASSWORD_LENGTH} characters long."}
                ),
                400,
            )
        if db.users.find_one({"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 400

        timestamp = datetime.utcnow()
        user_document = {
            "name": name,
            "email": email,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "role": "customer",
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        if phone:
            user_document["phone"] = phone

        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"message": "An account with this email already exists."}), 400
        user_document["_id"] = insert_result.inserted_id
        app.logger.info("Registered new account %s", email)

        return (
            jsonify({"token": issue_token(user_document), "user": serialize_user(user_document)}),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        stored_hash = user.get("password") if user else None
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        try:
            password_matches = bool(stored_hash) and bcrypt.checkpw(
                password.encode("utf-8"), stored_hash
            )
        except ValueError:
            password_matches = False
        if not password_matches:
            return jsonify({"message": "Invalid credentials"}), 401

        db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": datetime.utcnow()}})
        return jsonify({"token": issue_token(user), "user": serialize_user(user)})

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def current_account():
        current_user, user_error = require_user()
        if user_error:
            return user_error
        return jsonify({"user": serialize_user(current_user)})

    @app.route("/api/auth/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        current_user, user_error = require_user()
        if user_error:
            return user_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return jsonify({"message": "Name cannot be empty."}), 400
            updates["name"] = name
        if "phone" in payload:
            updates["phone"] = str(payload.get("phone") or "").strip()
        if "address" in payload:
            updates["address"] = normalize_address_payload(payload.get("address"))

        new_password = str(payload.get("new_password") or "")
        if new_password:
            current_password = str(payload.get("current_password") or "")
            stored_hash = current_user.get("password") or b""
            if isinstance(stored_hash, str):
                stored_hash = stored_hash.encode("utf-8")
            try:
                password_matches = bcrypt.checkpw(current_password.encode("utf-8"), stored_hash)
            except ValueError:
                password_matches = False
            if not password_matches:
                return jsonify({"message": "Current password is incorrect."}), 400
            if len(new_password) < MIN_PASSWORD_LENGTH:
                return (
                    jsonify(
                        {"message": f"Passwords must be at least {MIN_PASSWORD_LENGTH} characters long."}
                    ),
                    400,
                )
            updates["password"] = bcrypt.hashpw(new_password.encode("utf-8"), bcrypt.gensalt())

        if not updates:
            return jsonify({"message": "No changes were provided."}), 400

        updates["updated_at"] = datetime.utcnow()
        db.users.update_one({"_id": current_user["_id"]}, {"$set": updates})
        updated_user = db.users.find_one({"_id": current_user["_id"]})
        return jsonify({"message": "Profile updated successfully.", "user": serialize_user(updated_user)})

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        query: Dict[str, object] = {}

        search = str(request.args.get("search") or "").strip()
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]

        category = request.args.get("category")
        if category:
            category_id = normalize_object_id_value(category)
            if category_id is None:
                return jsonify({"message": "Invalid category identifier."}), 400
            query["category"] = category_id

        if parse_bool(request.args.get("amazing")):
            query["isAmazingOffer"] = True

        price_filter: Dict[str, float] = {}
        min_price = safe_float(request.args.get("min_price"), None)
        max_price = safe_float(request.args.get("max_price"), None)
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        if price_filter:
            query["price"] = price_filter

        sort_key = str(request.args.get("sort") or "newest").strip().lower()
        sort_spec = PRODUCT_SORTS.get(sort_key, PRODUCT_SORTS["newest"])

        page = max(1, safe_int(request.args.get("page"), 1))
        limit = min(MAX_PAGE_SIZE, max(1, safe_int(request.args.get("limit"), 20)))

        total = db.products.count_documents(query)
        cursor = db.products.find(query).sort(sort_spec).skip((page - 1) * limit).limit(limit)

        return jsonify(
            {
                "products": serialize_products(cursor),
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": max(1, math.ceil(total / limit)) if total else 0,
                },
            }
        )

    @app.route("/api/products/amazing-offers", methods=["GET"])
    def list_amazing_offers():
        limit = min(MAX_PAGE_SIZE, max(1, safe_int(request.args.get("limit"), 10)))
        cursor = (
            db.products.find({"isAmazingOffer": True})
            .sort(PRODUCT_SORTS["newest"])
            .limit(limit)
        )
        return jsonify({"products": serialize_products(cursor)})

    @app.route("/api/products/bestsellers", methods=["GET"])
    def list_bestsellers():
        limit = min(MAX_PAGE_SIZE, max(1, safe_int(request.args.get("limit"), 10)))
        cursor = db.products.find().sort(PRODUCT_SORTS["bestsellers"]).limit(limit)
        return jsonify({"products": serialize_products(cursor)})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_document(db.products, product_id, "Product")
        if load_error:
            return load_error
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = get_request_payload()
        fields, validation_error = normalize_product_payload(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        saved_urls, image_error = save_product_images(request.files.getlist("images"))
        if image_error:
            return jsonify({"message": image_error}), 400

        timestamp = datetime.utcnow()
        product_document = {
            "images": [],
            "category": None,
            "salesCount": 0,
            **fields,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        product_document["images"] = list(product_document["images"]) + saved_urls

        insert_result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": insert_result.inserted_id})
        app.logger.info(
            "Product %s created by %s", insert_result.inserted_id, current_user.get("email")
        )

        return (
            jsonify(
                {
                    "message": "Product added successfully.",
                    "product": serialize_product(created_product),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_document(db.products, product_id, "Product")
        if load_error:
            return load_error

        payload = get_request_payload()
        fields, validation_error = normalize_product_payload(payload, partial=True)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        saved_urls, image_error = save_product_images(request.files.getlist("images"))
        if image_error:
            return jsonify({"message": image_error}), 400

        removed_images = payload.get("remove_images") or []
        if isinstance(removed_images, str):
            removed_images = [removed_images]
        images_changed = "images" in fields or bool(removed_images) or bool(saved_urls)

        stored_images = product_document.get("images") or []
        current_images = list(fields.pop("images", stored_images))
        current_images = [url for url in current_images if url not in removed_images]
        dropped = [url for url in stored_images if url not in current_images]
        if images_changed:
            fields["images"] = current_images + saved_urls

        if not fields:
            return jsonify({"message": "No changes were provided."}), 400

        fields["updated_at"] = datetime.utcnow()
        db.products.update_one({"_id": product_document["_id"]}, {"$set": fields})
        remove_product_images(dropped)

        updated_product = db.products.find_one({"_id": product_document["_id"]})
        return jsonify(
            {
                "message": "Product updated successfully.",
                "product": serialize_product(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        current_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_document(db.products, product_id, "Product")
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        remove_product_images(product_document.get("images"))
        app.logger.info(
            "Product %s deleted by %s", product_document["_id"], current_user.get("email")
        )
        return jsonify({"message": "Product removed successfully."})

    # Categories
    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        category_documents = list(db.categories.find().sort("name", ASCENDING))
        product_counts = build_category_product_counts()
        categories = [
            serialize_category(document, product_counts=product_counts)
            for document in category_documents
        ]

        if parse_bool(request.args.get("with_products")):
            products_by_category: Dict[str, List[Dict]] = {}
            category_ids = [document["_id"] for document in category_documents]
            product_documents = db.products.find({"category": {"$in": category_ids}}).sort(
                PRODUCT_SORTS["newest"]
            )
            for product in serialize_products(product_documents):
                category_info = product.get("category") or {}
                products_by_category.setdefault(category_info.get("id"), []).append(product)
            for category in categories:
                category["products"] = products_by_category.get(category["id"], [])

        return jsonify({"categories": categories})

    @app.route("/api/categories/<category_id>", methods=["GET"])
    def get_category(category_id: str):
        category_document, load_error = fetch_document(db.categories, category_id, "Category")
        if load_error:
            return load_error
        product_documents = list(
            db.products.find({"category": category_document["_id"]}).sort(PRODUCT_SORTS["newest"])
        )
        serialized = serialize_category(
            category_document, product_counts={category_document["_id"]: len(product_documents)}
        )
        serialized["products"] = serialize_products(product_documents)
        return jsonify({"category": serialized})

    @app.route("/api/categories", methods=["POST"])
    @jwt_required()
    def create_category():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        name = " ".join(str(payload.get("name") or "").split())
        if len(name) < 2:
            return (
                jsonify({"message": "Please provide a category name with at least two characters."}),
                400,
            )
        if db.categories.find_one({"name": name}):
            return jsonify({"message": "A category with this name already exists."}), 400

        timestamp = datetime.utcnow()
        category_document = {
            "name": name,
            "description": str(payload.get("description") or "").strip(),
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            insert_result = db.categories.insert_one(category_document)
        except DuplicateKeyError:
            return jsonify({"message": "A category with this name already exists."}), 400
        category_document["_id"] = insert_result.inserted_id

        return (
            jsonify(
                {
                    "message": "Category created successfully.",
                    "category": serialize_category(category_document, product_counts={}),
                }
            ),
            201,
        )

    @app.route("/api/categories/<category_id>", methods=["PUT"])
    @jwt_required()
    def update_category(category_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        category_document, load_error = fetch_document(db.categories, category_id, "Category")
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}
        if "name" in payload:
            name = " ".join(str(payload.get("name") or "").split())
            if len(name) < 2:
                return (
                    jsonify({"message": "Please provide a category name with at least two characters."}),
                    400,
                )
            duplicate = db.categories.find_one(
                {"name": name, "_id": {"$ne": category_document["_id"]}}
            )
            if duplicate:
                return jsonify({"message": "A category with this name already exists."}), 400
            updates["name"] = name
        if "description" in payload:
            updates["description"] = str(payload.get("description") or "").strip()

        if not updates:
            return jsonify({"message": "No changes were provided."}), 400

        updates["updated_at"] = datetime.utcnow()
        db.categories.update_one({"_id": category_document["_id"]}, {"$set": updates})
        updated = db.categories.find_one({"_id": category_document["_id"]})
        return jsonify(
            {
                "message": "Category updated successfully.",
                "category": serialize_category(updated, build_category_product_counts()),
            }
        )

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category(category_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        category_document, load_error = fetch_document(db.categories, category_id, "Category")
        if load_error:
            return load_error

        db.categories.delete_one({"_id": category_document["_id"]})
        detached = db.products.update_many(
            {"category": category_document["_id"]}, {"$set": {"category": None}}
        )

        return jsonify(
            {
                "message": f'"{category_document.get("name", "Category")}" has been removed from the catalog.',
                "category": {"id": str(category_document["_id"])},
                "detached_products": detached.modified_count,
            }
        )

    # Cart
    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        current_user, user_error = require_user()
        if user_error:
            return user_error
        return cart_response(current_user["_id"])

    @app.route("/api/cart/items", methods=["POST"])
    @jwt_required()
    def add_cart_item():
        current_user, user_error = require_user()
        if user_error:
            return user_error

        payload = request.get_json(silent=True) or {}
        product_document, load_error = fetch_document(
            db.products,
            payload.get("product_id") or payload.get("productId") or "",
            "Product",
        )
        if load_error:
            return load_error

        quantity = safe_int(payload.get("quantity", 1), 0)
        if quantity <= 0:
            return jsonify({"message": "Quantity must be at least 1."}), 400

        cart_document = get_cart_document(current_user["_id"])
        items = [dict(item) for item in cart_document.get("items") or []]
        existing = next(
            (item for item in items if item.get("product") == product_document["_id"]),
            None,
        )
        requested_total = quantity + (safe_int(existing.get("quantity"), 0) if existing else 0)

        stock = max(0, safe_int(product_document.get("stockQuantity"), 0))
        if requested_total > stock:
            return (
                jsonify({"message": f"Only {stock} left in stock for this product."}),
                400,
            )

        if existing:
            existing["quantity"] = requested_total
        else:
            items.append({"product": product_document["_id"], "quantity": quantity})
        save_cart_items(cart_document, items)

        return cart_response(current_user["_id"], "Product added to cart.")

    @app.route("/api/cart/items/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_cart_item(product_id: str):
        current_user, user_error = require_user()
        if user_error:
            return user_error

        product_object_id = normalize_object_id_value(product_id)
        if product_object_id is None:
            return jsonify({"message": "Invalid product identifier."}), 400

        payload = request.get_json(silent=True) or {}
        quantity = safe_int(payload.get("quantity"), -1)
        if quantity < 0:
            return jsonify({"message": "Quantity must be zero or more."}), 400

        cart_document = get_cart_document(current_user["_id"])
        items = [dict(item) for item in cart_document.get("items") or []]
        existing = next(
            (item for item in items if item.get("product") == product_object_id), None
        )
        if not existing:
            return jsonify({"message": "Product is not in your cart."}), 404

        if quantity == 0:
            items = [item for item in items if item is not existing]
            save_cart_items(cart_document, items)
            return cart_response(current_user["_id"], "Product removed from cart.")

        product_document = db.products.find_one({"_id": product_object_id})
        if product_document:
            stock = max(0, safe_int(product_document.get("stockQuantity"), 0))
            if quantity > stock:
                return (
                    jsonify({"message": f"Only {stock} left in stock for this product."}),
                    400,
                )

        existing["quantity"] = quantity
        save_cart_items(cart_document, items)
        return cart_response(current_user["_id"], "Cart updated.")

    @app.route("/api/cart/items/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(product_id: str):
        current_user, user_error = require_user()
        if user_error:
            return user_error

        product_object_id = normalize_object_id_value(product_id)
        if product_object_id is None:
            return jsonify({"message": "Invalid product identifier."}), 400

        cart_document = get_cart_document(current_user["_id"])
        items = cart_document.get("items") or []
        remaining = [item for item in items if item.get("product") != product_object_id]
        if len(remaining) == len(items):
            return jsonify({"message": "Product is not in your cart."}), 404

        save_cart_items(cart_document, remaining)
        return cart_response(current_user["_id"], "Product removed from cart.")

    @app.route("/api/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        current_user, user_error = require_user()
        if user_error:
            return user_error

        cart_document = get_cart_document(current_user["_id"])
        save_cart_items(cart_document, [])
        return cart_response(current_user["_id"], "Cart cleared.")

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user, user_error = require_user()
        if user_error:
            return user_error

        payload = request.get_json(silent=True) or {}
        shipping_address = normalize_address_payload(
            payload.get("shipping_address") or payload.get("shippingAddress") or {}
        )
        if not is_complete_address(shipping_address):
            return (
                jsonify({"message": "A shipping address with address and city is required."}),
                400,
            )

        cart_document = db.carts.find_one({"user": current_user["_id"]})
        cart_items = (cart_document or {}).get("items") or []
        order_items, items_error = build_order_items(cart_items)
        if items_error:
            return items_error
        if not order_items:
            return jsonify({"message": "Your cart is empty."}), 400

        conflicting_item = reserve_stock(order_items)
        if conflicting_item:
            return (
                jsonify(
                    {
                        "message": f'"{conflicting_item["name"]}" just sold out. Please review your cart.',
                        "product_id": str(conflicting_item["product"]),
                    }
                ),
                409,
            )

        total_price = round(
            sum(item["price"] * item["quantity"] for item in order_items), 2
        )
        timestamp = datetime.utcnow()
        order_document = {
            "user": current_user["_id"],
            "items": order_items,
            "total_price": total_price,
            "item_count": sum(item["quantity"] for item in order_items),
            "status": "pending",
            "shipping_address": shipping_address,
            "payment_method": str(
                payload.get("payment_method") or payload.get("paymentMethod") or "cash_on_delivery"
            ).strip(),
            "notes": str(payload.get("notes") or "").strip(),
            "stock_restored": False,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            insert_result = db.orders.insert_one(order_document)
        except PyMongoError:
            adjust_stock(order_items, 1)
            raise
        order_document["_id"] = insert_result.inserted_id

        if cart_document:
            save_cart_items(cart_document, [])

        app.logger.info(
            "Order %s placed by %s for %s", insert_result.inserted_id, current_user.get("email"), total_price
        )
        return (
            jsonify({"message": "Order placed successfully.", "order": serialize_order(order_document)}),
            201,
        )

    @app.route("/api/orders/my", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user, user_error = require_user()
        if user_error:
            return user_error
        cursor = db.orders.find({"user": current_user["_id"]}).sort(
            [("created_at", DESCENDING), ("_id", DESCENDING)]
        )
        return jsonify({"orders": [serialize_order(document) for document in cursor]})

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        query: Dict[str, object] = {}
        status_filter = str(request.args.get("status") or "").strip().lower()
        if status_filter:
            if status_filter not in ORDER_STATUSES:
                return jsonify({"message": "Unknown order status."}), 400
            query["status"] = status_filter

        order_documents = list(
            db.orders.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        )
        user_ids = list({document.get("user") for document in order_documents if document.get("user")})
        customers = (
            {document["_id"]: document for document in db.users.find({"_id": {"$in": user_ids}})}
            if user_ids
            else {}
        )
        return jsonify(
            {
                "orders": [
                    serialize_order(document, customers.get(document.get("user")))
                    for document in order_documents
                ]
            }
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user, user_error = require_user()
        if user_error:
            return user_error

        order_document, load_error = fetch_document(db.orders, order_id, "Order")
        if load_error:
            return load_error
        if not can_view_order(order_document, current_user):
            return jsonify({"message": "You do not have access to this order."}), 403

        customer = db.users.find_one({"_id": order_document.get("user")})
        return jsonify({"order": serialize_order(order_document, customer)})

    def transition_order(order_document, new_status: str):
        updates: Dict[str, object] = {"status": new_status, "updated_at": datetime.utcnow()}
        if new_status == "cancelled":
            # Whoever flips stock_restored first puts the stock back.
            claimed = db.orders.find_one_and_update(
                {"_id": order_document["_id"], "stock_restored": {"$ne": True}},
                {"$set": {**updates, "stock_restored": True}},
                return_document=ReturnDocument.AFTER,
            )
            if claimed:
                adjust_stock(claimed.get("items") or [], 1)
                return claimed
        db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})
        return db.orders.find_one({"_id": order_document["_id"]})

    @app.route("/api/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_document, load_error = fetch_document(db.orders, order_id, "Order")
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        new_status = str(payload.get("status") or "").strip().lower()
        if new_status not in ORDER_STATUSES:
            return (
                jsonify({"message": f"Status must be one of: {', '.join(ORDER_STATUSES)}."}),
                400,
            )
        if order_document.get("status") == "cancelled" and new_status != "cancelled":
            return jsonify({"message": "Cancelled orders cannot be reopened."}), 400

        updated = transition_order(order_document, new_status)
        app.logger.info(
            "Order %s moved to %s by %s", order_document["_id"], new_status, admin_user.get("email")
        )
        return jsonify({"message": "Order status updated.", "order": serialize_order(updated)})

    @app.route("/api/orders/<order_id>/cancel", methods=["PUT"])
    @jwt_required()
    def cancel_order(order_id: str):
        current_user, user_error = require_user()
        if user_error:
            return user_error

        order_document, load_error = fetch_document(db.orders, order_id, "Order")
        if load_error:
            return load_error
        if order_document.get("user") != current_user["_id"]:
            return jsonify({"message": "You do not have access to this order."}), 403
        if order_document.get("status") != "pending":
            return jsonify({"message": "Only pending orders can be cancelled."}), 400

        updated = transition_order(order_document, "cancelled")
        return jsonify({"message": "Order cancelled.", "order": serialize_order(updated)})

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
