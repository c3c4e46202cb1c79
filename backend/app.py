import json
import logging
import math
import os
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

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
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from google_identity import GoogleTokenError, verify_google_id_token
from image_pipeline import (
    UploadRejected,
    collect_uploaded_files,
    process_color_images,
    remove_uploaded_image,
)

APP_ENV = (os.getenv("APP_ENV") or "development").strip().lower()

if APP_ENV == "production":
    load_dotenv(".prod.env")
elif APP_ENV == "development":
    load_dotenv(".dev.env")
load_dotenv()


def utcnow() -> datetime:
    # Naive UTC, matching the datetimes PyMongo returns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_app(config: Optional[Dict] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # --- Configuration ---
    app.config["APP_ENV"] = APP_ENV
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=7)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/clothing_store"
    )
    app.config["GOOGLE_CLIENT_ID"] = (os.getenv("GOOGLE_CLIENT_ID") or "").strip()
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024

    # Processed product images live under backend/uploads unless overridden
    app.config["UPLOAD_FOLDER"] = os.getenv("UPLOAD_FOLDER") or os.path.join(
        app.root_path, "uploads"
    )
    app.config["SEED_ADMIN_EMAIL"] = os.getenv("SEED_ADMIN_EMAIL", "admin@example.com")
    app.config["SEED_ADMIN_PASSWORD"] = os.getenv("SEED_ADMIN_PASSWORD", "admin123")
    app.config["SEED_USER_EMAIL"] = os.getenv("SEED_USER_EMAIL", "user@example.com")
    app.config["SEED_USER_PASSWORD"] = os.getenv("SEED_USER_PASSWORD", "user123")

    if config:
        app.config.update(config)

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
    is_production = app.config["APP_ENV"] == "production"
    if not is_production:
        app.logger.setLevel(logging.INFO)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    mongo = PyMongo(app)
    db = mongo.db

    try:
        db.users.create_index("email", unique=True)
        db.products.create_index([("created_at", -1)])
        db.products.create_index("category")
        db.feedback.create_index("rating")
        db.feedback.create_index("status")
        db.feedback.create_index([("created_at", -1)])
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure collection indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    USER_ROLES = ("user", "admin")
    PRODUCT_SIZES = ("XS", "S", "M", "L", "XL")
    PRODUCT_FEATURE_FIELDS = ("fabric", "pattern", "fit", "neck", "sleeve", "style")
    DEFAULT_CURRENCY = "USD"
    DEFAULT_HEX_CODE = "#000000"
    FEEDBACK_STATUSES = ("pending", "approved", "rejected")
    FEEDBACK_TEXT_MAX_LENGTH = 1000
    ADDRESS_LABELS = ("Home", "Office", "Other")
    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 100
    SORT_FIELD_ALIASES = {
        "createdAt": "created_at",
        "updatedAt": "updated_at",
        "lastLogin": "last_login_at",
        "lastLoginAt": "last_login_at",
    }

    def upload_root() -> str:
        return app.config["UPLOAD_FOLDER"]

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def isoformat(value) -> Optional[str]:
        return value.isoformat() + "Z" if isinstance(value, datetime) else None

    def parse_object_id(value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def payload_value(payload: Dict, *keys: str, default=None):
        for key in keys:
            if key in payload:
                return payload.get(key)
        return default

    def has_any_key(payload: Dict, *keys: str) -> bool:
        return any(key in payload for key in keys)

    def parse_bool(value) -> bool:
        if isinstance(value, bool):
            return value
        return str(value or "").strip().lower() in {"true", "1", "yes", "on"}

    def parse_whole_number(value) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        if isinstance(value, int):
            return value
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return None

    def parse_json_value(value, expected_type, label: str):
        if value is None:
            return expected_type(), None
        if isinstance(value, expected_type):
            return value, None
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return expected_type(), None
            try:
                parsed = json.loads(candidate)
            except (json.JSONDecodeError, ValueError):
                return None, f"We could not understand the {label}."
            if isinstance(parsed, expected_type):
                return parsed, None
        return None, f"We could not understand the {label}."

    def request_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        return payload if isinstance(payload, dict) else {}

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())

    def password_matches(password: str, stored_hash) -> bool:
        if not stored_hash:
            return False
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
        except ValueError:
            return False

    def get_user_role(user_document) -> str:
        role = str((user_document or {}).get("role") or "").strip().lower()
        return role if role in USER_ROLES else "user"

    def issue_token(user_document) -> str:
        return create_access_token(
            identity=str(user_document["_id"]),
            additional_claims={"role": get_user_role(user_document)},
        )

    def auth_response(user_document, status_code: int = 200):
        return (
            jsonify(
                {
                    "success": True,
                    "token": issue_token(user_document),
                    "id": str(user_document["_id"]),
                    "name": user_document.get("name", "") or "",
                    "role": get_user_role(user_document),
                }
            ),
            status_code,
        )

    def load_current_user():
        user_id = parse_object_id(get_jwt_identity())
        user_document = db.users.find_one({"_id": user_id}) if user_id else None
        if not user_document:
            return None, (jsonify({"message": "User not found."}), 404)
        return user_document, None

    def require_role(*roles: str):
        current_user, load_error = load_current_user()
        if load_error:
            return None, load_error

        if get_user_role(current_user) in roles:
            return current_user, None

        return (
            None,
            (
                jsonify(
                    {"message": "You need additional permissions to perform this action."}
                ),
                403,
            ),
        )

    def require_admin_user():
        return require_role("admin")

    def parse_pagination_args() -> Tuple[int, int]:
        try:
            page = max(int(request.args.get("page", 1)), 1)
        except (TypeError, ValueError):
            page = 1
        try:
            limit = min(
                max(int(request.args.get("limit", DEFAULT_PAGE_SIZE)), 1), MAX_PAGE_SIZE
            )
        except (TypeError, ValueError):
            limit = DEFAULT_PAGE_SIZE
        return page, limit

    def build_pagination(page: int, limit: int, total: int) -> Dict[str, object]:
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
            "has_next_page": page * limit < total,
            "has_prev_page": page > 1,
        }

    def parse_sort_args(allowed_fields, default_field: str = "created_at"):
        raw_field = (
            request.args.get("sortBy") or request.args.get("sort_by") or default_field
        ).strip()
        sort_field = SORT_FIELD_ALIASES.get(raw_field, raw_field)
        if sort_field not in allowed_fields:
            sort_field = default_field
        raw_order = (
            request.args.get("sortOrder") or request.args.get("sort_order") or "desc"
        )
        return sort_field, 1 if raw_order.strip().lower() == "asc" else -1

    def parse_rating_filter() -> Optional[int]:
        raw_rating = request.args.get("rating")
        if raw_rating in (None, ""):
            return None
        try:
            return int(raw_rating)
        except (TypeError, ValueError):
            return None

    # --- Addresses ---

    ADDRESS_FIELDS = (
        "first_name",
        "last_name",
        "country",
        "company_name",
        "street_address",
        "apt_suite",
        "city",
        "state",
        "postal_code",
        "phone",
        "delivery_instruction",
        "label",
    )
    ADDRESS_FIELD_ALIASES = {
        "first_name": ("first_name", "firstName"),
        "last_name": ("last_name", "lastName"),
        "company_name": ("company_name", "companyName"),
        "street_address": ("street_address", "streetAddress", "line1"),
        "apt_suite": ("apt_suite", "aptSuite", "line2"),
        "postal_code": ("postal_code", "postalCode", "postcode", "zip"),
        "delivery_instruction": ("delivery_instruction", "deliveryInstruction"),
    }
    ADDRESS_FLAG_ALIASES = {
        "is_default_shipping": ("is_default_shipping", "isDefaultShipping"),
        "is_default_billing": ("is_default_billing", "isDefaultBilling"),
    }
    ADDRESS_REQUIRED_FIELDS = (
        "first_name",
        "last_name",
        "country",
        "street_address",
        "city",
        "state",
        "postal_code",
        "phone",
    )

    def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, object]:
        if not isinstance(payload, dict):
            return {}

        normalized: Dict[str, object] = {}
        for field in ADDRESS_FIELDS:
            aliases = ADDRESS_FIELD_ALIASES.get(field, (field,))
            if not has_any_key(payload, *aliases):
                continue
            normalized[field] = str(payload_value(payload, *aliases) or "").strip()

        for flag, aliases in ADDRESS_FLAG_ALIASES.items():
            if has_any_key(payload, *aliases):
                normalized[flag] = parse_bool(payload_value(payload, *aliases))
        return normalized

    def validate_address(address: Dict[str, object]) -> Optional[str]:
        missing = [field for field in ADDRESS_REQUIRED_FIELDS if not address.get(field)]
        if missing:
            return f"Missing required address fields: {', '.join(missing)}."
        if address.get("label") not in ADDRESS_LABELS:
            return "Address label must be 'Home', 'Office', or 'Other'."
        return None

    def build_address(payload: Optional[Dict], existing: Optional[Dict] = None):
        address: Dict[str, object] = dict(existing or {})
        address.update(normalize_address_payload(payload))
        if not address.get("label"):
            address["label"] = "Home"
        address.setdefault("is_default_shipping", False)
        address.setdefault("is_default_billing", False)

        address_error = validate_address(address)
        if address_error:
            return None, address_error

        now = utcnow()
        address.setdefault("_id", ObjectId())
        address.setdefault("created_at", now)
        address["updated_at"] = now
        return address, None

    def apply_default_address_flags(addresses: List[Dict], preferred: Dict) -> List[Dict]:
        for flag in ADDRESS_FLAG_ALIASES:
            if not preferred.get(flag):
                continue
            for address in addresses:
                if address.get("_id") != preferred.get("_id"):
                    address[flag] = False
        return addresses

    def build_address_list(raw_addresses):
        parsed, parse_error = parse_json_value(raw_addresses, list, "address list")
        if parse_error:
            return None, parse_error

        addresses: List[Dict] = []
        for entry in parsed:
            if not isinstance(entry, dict):
                return None, "Each address must be an object."
            existing_id = parse_object_id(payload_value(entry, "id", "_id"))
            address, address_error = build_address(
                entry, {"_id": existing_id} if existing_id else None
            )
            if address_error:
                return None, address_error
            addresses.append(address)

        for address in list(addresses):
            apply_default_address_flags(addresses, address)
        return addresses, None

    def serialize_address(address: Optional[Dict]) -> Dict[str, object]:
        address = address or {}
        serialized: Dict[str, object] = {"id": str(address.get("_id", ""))}
        for field in ADDRESS_FIELDS:
            serialized[field] = address.get(field, "") or ""
        serialized["is_default_shipping"] = bool(address.get("is_default_shipping"))
        serialized["is_default_billing"] = bool(address.get("is_default_billing"))
        serialized["created_at"] = isoformat(address.get("created_at"))
        serialized["updated_at"] = isoformat(address.get("updated_at"))
        return serialized

    # --- Users ---

    def serialize_user(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "phone": user_document.get("phone", "") or "",
            "role": get_user_role(user_document),
            "provider": user_document.get("provider", "local") or "local",
            "addresses": [
                serialize_address(address)
                for address in user_document.get("addresses") or []
            ],
            "favorites": [str(product_id) for product_id in user_document.get("favorites") or []],
            "created_at": isoformat(user_document.get("created_at")),
            "updated_at": isoformat(user_document.get("updated_at")),
            "last_login_at": isoformat(user_document.get("last_login_at")),
        }

    def serialize_user_summary(user_document) -> Dict[str, object]:
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "provider": user_document.get("provider", "local") or "local",
            "role": get_user_role(user_document),
            "created_at": isoformat(user_document.get("created_at")),
            "updated_at": isoformat(user_document.get("updated_at")),
            "last_login_at": isoformat(user_document.get("last_login_at")),
        }

    def build_user_updates(payload: Dict):
        updates: Dict[str, object] = {}
        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return None, "Name cannot be empty."
            updates["name"] = name
        if "phone" in payload:
            updates["phone"] = str(payload.get("phone") or "").strip()
        if "addresses" in payload:
            addresses, address_error = build_address_list(payload.get("addresses"))
            if address_error:
                return None, address_error
            updates["addresses"] = addresses
        return updates, None

    def apply_user_updates(user_document, payload: Dict):
        updates, update_error = build_user_updates(payload)
        if update_error:
            return None, (jsonify({"message": update_error}), 400)
        if not updates:
            return None, (jsonify({"message": "Provide at least one field to update."}), 400)

        updates["updated_at"] = utcnow()
        db.users.update_one({"_id": user_document["_id"]}, {"$set": updates})
        return db.users.find_one({"_id": user_document["_id"]}), None

    def fetch_user(user_id: str):
        object_id = parse_object_id(user_id)
        if not object_id:
            return None, (jsonify({"message": "Invalid user identifier."}), 400)

        user_document = db.users.find_one({"_id": object_id})
        if not user_document:
            return None, (jsonify({"message": "User not found."}), 404)

        return user_document, None

    def create_user_document(
        name: str,
        email: str,
        *,
        password: Optional[str] = None,
        provider: str = "local",
        role: str = "user",
        phone: str = "",
        google_id: Optional[str] = None,
    ):
        now = utcnow()
        user_document = {
            "name": name,
            "email": email,
            "provider": provider,
            "role": role,
            "addresses": [],
            "favorites": [],
            "cart": [],
            "created_at": now,
            "updated_at": now,
            "last_login_at": now,
        }
        if password:
            user_document["password"] = hash_password(password)
        if phone:
            user_document["phone"] = phone
        if google_id:
            user_document["google_id"] = google_id

        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id
        return user_document

    def touch_last_login(user_document, extra: Optional[Dict] = None):
        updates = {"last_login_at": utcnow()}
        if extra:
            updates.update(extra)
        db.users.update_one({"_id": user_document["_id"]}, {"$set": updates})

    # --- Products ---

    def generate_product_code() -> str:
        return f"PROD_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"

    def parse_price(raw_price):
        currency = None
        if isinstance(raw_price, dict):
            currency = raw_price.get("currency")
            raw_price = raw_price.get("amount")
        try:
            price_value = round(float(raw_price), 2)
        except (TypeError, ValueError):
            return None, None, "Price must be a valid number."
        if not math.isfinite(price_value) or price_value <= 0:
            return None, None, "Price must be greater than zero."
        return price_value, currency, None

    def parse_sizes(raw_sizes):
        parsed, parse_error = parse_json_value(raw_sizes, list, "size list")
        if parse_error:
            return None, parse_error

        sizes: List[Dict[str, object]] = []
        seen = set()
        for entry in parsed:
            available = True
            if isinstance(entry, dict):
                available = parse_bool(entry.get("available", True))
                entry = entry.get("size")
            size = str(entry or "").strip().upper()
            if size not in PRODUCT_SIZES:
                return None, f"Sizes must be one of: {', '.join(PRODUCT_SIZES)}."
            if size in seen:
                continue
            seen.add(size)
            sizes.append({"size": size, "available": available})
        return sizes, None

    def parse_colors(raw_colors, keep_images: bool):
        parsed, parse_error = parse_json_value(raw_colors, list, "color list")
        if parse_error:
            return None, parse_error

        colors: List[Dict[str, str]] = []
        for entry in parsed:
            if not isinstance(entry, dict):
                return None, "Each color must be an object with a name."
            name = str(entry.get("name") or "").strip()
            if not name:
                return None, "Each color needs a name."
            image = entry.get("image") if keep_images else ""
            if isinstance(image, dict):
                image = image.get("url")
            colors.append(
                {
                    "name": name,
                    "hex_code": str(
                        payload_value(entry, "hex", "hexCode", "hex_code") or DEFAULT_HEX_CODE
                    ).strip(),
                    "image": str(image or ""),
                }
            )
        return colors, None

    def parse_features(raw_features):
        parsed, parse_error = parse_json_value(raw_features, dict, "feature list")
        if parse_error:
            return None, parse_error
        return {
            field: str(parsed.get(field) or "").strip()
            for field in PRODUCT_FEATURE_FIELDS
            if parsed.get(field)
        }, None

    def build_product_fields(payload: Dict, partial: bool = False):
        """Validate a product payload into a mapping of dotted document paths."""
        fields: Dict[str, object] = {}

        for field, label in (("name", "name"), ("brand", "brand"), ("category", "category")):
            if partial and field not in payload:
                continue
            value = str(payload.get(field) or "").strip()
            if not value:
                return None, f"A product {label} is required."
            fields[field] = value

        for field, aliases in (
            ("sub_category", ("sub_category", "subCategory")),
            ("description", ("description",)),
            ("status", ("status",)),
        ):
            if has_any_key(payload, *aliases):
                fields[field] = str(payload_value(payload, *aliases) or "").strip()
        if not partial:
            fields["sub_category"] = fields.get("sub_category", "")
            fields["description"] = fields.get("description", "")
            fields["status"] = fields.get("status") or "Draft"

        if not partial or "price" in payload:
            price_value, currency, price_error = parse_price(payload.get("price"))
            if price_error:
                return None, price_error
            fields["price.amount"] = price_value
            fields["price.currency"] = str(
                currency or payload.get("currency") or DEFAULT_CURRENCY
            ).strip().upper()

        if "stock" in payload or not partial:
            raw_stock = payload.get("stock")
            if raw_stock in (None, ""):
                raw_stock = 0
            stock_value = parse_whole_number(raw_stock)
            if stock_value is None:
                return None, "Stock must be a whole number."
            if stock_value < 0:
                return None, "Stock cannot be negative."
            fields["stock"] = stock_value

        if "features" in payload or not partial:
            features, features_error = parse_features(payload.get("features"))
            if features_error:
                return None, features_error
            fields["features"] = features

        if "sizes" in payload or not partial:
            sizes, sizes_error = parse_sizes(payload.get("sizes"))
            if sizes_error:
                return None, sizes_error
            fields["sizes"] = sizes

        if "colors" in payload or not partial:
            colors, colors_error = parse_colors(payload.get("colors"), keep_images=partial)
            if colors_error:
                return None, colors_error
            fields["colors"] = colors

        for field, aliases in (
            ("shipping.free_shipping", ("free_shipping", "freeShipping")),
            ("shipping.return_available", ("return_available", "returnAvailable")),
        ):
            if has_any_key(payload, *aliases) or not partial:
                fields[field] = parse_bool(payload_value(payload, *aliases, default=False))

        if has_any_key(payload, "estimated_delivery", "estimatedDelivery") or not partial:
            fields["shipping.estimated_delivery"] = str(
                payload_value(payload, "estimated_delivery", "estimatedDelivery") or ""
            ).strip()

        return fields, None

    def expand_document_paths(fields: Dict[str, object]) -> Dict[str, object]:
        document: Dict[str, object] = {}
        for path, value in fields.items():
            target = document
            parts = path.split(".")
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
        return document

    def color_image_urls(colors) -> List[str]:
        return [
            str(color.get("image"))
            for color in colors or []
            if isinstance(color, dict) and color.get("image")
        ]

    def attach_color_images(colors: List[Dict], uploads) -> None:
        if not uploads or not colors:
            return
        processed_images = process_color_images(
            uploads, list(range(len(colors))), upload_root()
        )
        for color, processed_image in zip(colors, processed_images):
            if processed_image:
                color["image"] = processed_image.url

    def serialize_product(product_document) -> Dict[str, object]:
        price = product_document.get("price") or {}
        shipping = product_document.get("shipping") or {}
        rating = product_document.get("rating") or {}
        media = product_document.get("media") or {}

        return {
            "id": str(product_document.get("_id")),
            "product_code": product_document.get("product_code", ""),
            "name": product_document.get("name", ""),
            "brand": product_document.get("brand", ""),
            "category": product_document.get("category", ""),
            "sub_category": product_document.get("sub_category", ""),
            "description": product_document.get("description", ""),
            "status": product_document.get("status", "Draft"),
            "features": product_document.get("features") or {},
            "sizes": product_document.get("sizes") or [],
            "colors": [
                {
                    "name": color.get("name", ""),
                    "hex_code": color.get("hex_code", DEFAULT_HEX_CODE),
                    "image": color.get("image", ""),
                }
                for color in product_document.get("colors") or []
            ],
            "price": {
                "currency": price.get("currency", DEFAULT_CURRENCY),
                "amount": price.get("amount", 0),
            },
            "stock": product_document.get("stock", 0),
            "rating": {
                "average": rating.get("average", 0),
                "count": rating.get("count", 0),
            },
            "media": {
                "images": media.get("images") or [],
                "video": media.get("video"),
            },
            "shipping": {
                "free_shipping": bool(shipping.get("free_shipping")),
                "return_available": bool(shipping.get("return_available")),
                "estimated_delivery": shipping.get("estimated_delivery", ""),
            },
            "created_at": isoformat(product_document.get("created_at")),
            "updated_at": isoformat(product_document.get("updated_at")),
        }

    def build_product_snapshot(product_document) -> Dict[str, object]:
        price = product_document.get("price") or {}
        media = product_document.get("media") or {}
        rating = product_document.get("rating") or {}
        return {
            "_id": product_document["_id"],
            "product_code": product_document.get("product_code", ""),
            "name": product_document.get("name", ""),
            "brand": product_document.get("brand", ""),
            "category": product_document.get("category", ""),
            "sub_category": product_document.get("sub_category", ""),
            "price": {
                "currency": price.get("currency", DEFAULT_CURRENCY),
                "amount": price.get("amount", 0),
            },
            "media": {"images": media.get("images") or [], "video": media.get("video")},
            "stock": product_document.get("stock", 0),
            "rating": {
                "average": rating.get("average", 0),
                "count": rating.get("count", 0),
            },
        }

    def fetch_product(product_id: str):
        object_id = parse_object_id(product_id)
        if not object_id:
            return None, (jsonify({"message": "Invalid product identifier."}), 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return None, (jsonify({"message": "Product not found."}), 404)

        return product_document, None

    # --- Cart & favorites ---

    def serialize_cart_item(item: Dict) -> Dict[str, object]:
        snapshot = dict(item.get("product") or {})
        product_id = snapshot.pop("_id", None)
        snapshot["id"] = str(product_id) if product_id else ""
        return {
            "id": item.get("id", ""),
            "product": snapshot,
            "quantity": int(item.get("quantity", 1) or 1),
            "selected_size": item.get("selected_size"),
            "selected_color": item.get("selected_color"),
            "unit_price": item.get("unit_price", 0),
            "created_at": isoformat(item.get("created_at")),
        }

    def serialize_cart(items: List[Dict]) -> List[Dict[str, object]]:
        return [serialize_cart_item(item) for item in items]

    def cart_item_product_id(item: Dict) -> str:
        return str((item.get("product") or {}).get("_id", ""))

    def optional_text(value) -> Optional[str]:
        candidate = str(value or "").strip()
        return candidate or None

    def favorite_ids(user_document) -> List[str]:
        return [str(product_id) for product_id in user_document.get("favorites") or []]

    def resolve_favorite_product(raw_product_id):
        if not raw_product_id:
            return None, (jsonify({"message": "productId is required."}), 400)
        return fetch_product(str(raw_product_id))

    def add_favorite(user_document, product_document) -> List[str]:
        db.users.update_one(
            {"_id": user_document["_id"]},
            {"$addToSet": {"favorites": product_document["_id"]}},
        )
        return favorite_ids(db.users.find_one({"_id": user_document["_id"]}))

    def remove_favorite(user_document, product_id: str) -> List[str]:
        object_id = parse_object_id(product_id)
        if object_id:
            db.users.update_one(
                {"_id": user_document["_id"]}, {"$pull": {"favorites": object_id}}
            )
        return favorite_ids(db.users.find_one({"_id": user_document["_id"]}))

    # --- Feedback ---

    def serialize_feedback(feedback_document, user_names=None) -> Dict[str, object]:
        user_id = feedback_document.get("user")
        responded_by = feedback_document.get("responded_by")
        names = user_names or {}
        return {
            "id": str(feedback_document.get("_id")),
            "user": {"id": str(user_id), "name": names.get(user_id, "")}
            if user_id
            else None,
            "name": feedback_document.get("name", ""),
            "rating": feedback_document.get("rating", 0),
            "text": feedback_document.get("text", ""),
            "status": feedback_document.get("status", "pending"),
            "admin_response": feedback_document.get("admin_response", ""),
            "responded_by": {"id": str(responded_by), "name": names.get(responded_by, "")}
            if responded_by
            else None,
            "responded_at": isoformat(feedback_document.get("responded_at")),
            "created_at": isoformat(feedback_document.get("created_at")),
            "updated_at": isoformat(feedback_document.get("updated_at")),
        }

    def build_feedback_user_names(feedback_documents) -> Dict[ObjectId, str]:
        user_ids = set()
        for document in feedback_documents:
            for key in ("user", "responded_by"):
                if isinstance(document.get(key), ObjectId):
                    user_ids.add(document[key])
        if not user_ids:
            return {}
        return {
            user_document["_id"]: user_document.get("name", "") or ""
            for user_document in db.users.find({"_id": {"$in": list(user_ids)}})
        }

    def list_feedback_page(query: Dict):
        page, limit = parse_pagination_args()
        sort_field, sort_order = parse_sort_args({"created_at", "rating", "status"})
        feedback_documents = list(
            db.feedback.find(query)
            .sort(sort_field, sort_order)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = db.feedback.count_documents(query)
        user_names = build_feedback_user_names(feedback_documents)
        return jsonify(
            {
                "success": True,
                "feedback": [
                    serialize_feedback(document, user_names)
                    for document in feedback_documents
                ],
                "pagination": build_pagination(page, limit, total),
            }
        )

    # --- Error handling & request logging ---

    @app.errorhandler(UploadRejected)
    def handle_upload_rejected(exc: UploadRejected):
        app.logger.warning("Rejected upload on %s: %s", request.path, exc.message)
        return jsonify({"message": exc.message}), exc.status

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_too_large(exc):
        return (
            jsonify(
                {
                    "message": "Uploads are limited to "
                    f"{app.config['MAX_CONTENT_LENGTH'] / (1024 * 1024):g} MB per request."
                }
            ),
            413,
        )

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc: HTTPException):
        return jsonify({"message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        payload = {"message": "Internal server error."}
        if not is_production:
            payload["error"] = str(exc)
        return jsonify(payload), 500

    if not is_production:

        @app.after_request
        def log_request(response):
            app.logger.info(
                "%s %s -> %s", request.method, request.path, response.status_code
            )
            return response

    @app.cli.command("seed-users")
    def seed_users():
        """Create the seed admin and seed user accounts when missing."""
        for email, password, role in (
            (app.config["SEED_ADMIN_EMAIL"], app.config["SEED_ADMIN_PASSWORD"], "admin"),
            (app.config["SEED_USER_EMAIL"], app.config["SEED_USER_PASSWORD"], "user"),
        ):
            normalized_email = normalize_email(email)
            if db.users.find_one({"email": normalized_email}):
                app.logger.info("Seed account %s already exists.", normalized_email)
                continue
            create_user_document(
                normalized_email.split("@")[0],
                normalized_email,
                password=password,
                role=role,
            )
            app.logger.info("Created seed %s account %s.", role, normalized_email)

    # --- ROUTES ---

    @app.route("/health")
    @app.route("/api/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(upload_root(), filename)

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    @jwt_required(optional=True)
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        name = str(payload.get("name") or "").strip()
        phone = str(payload.get("phone") or "").strip()
        role = str(payload.get("role") or "user").strip().lower()

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        if role not in USER_ROLES:
            return jsonify({"message": "Role must be 'user' or 'admin'."}), 400

        if role == "admin":
            if not get_jwt_identity():
                return (
                    jsonify({"message": "Only administrators can create admin accounts."}),
                    403,
                )
            _, permission_error = require_admin_user()
            if permission_error:
                return permission_error

        existing = db.users.find_one({"email": email})
        if existing:
            if existing.get("provider") == "google":
                return (
                    jsonify({"message": "Email registered with Google. Use Google login."}),
                    409,
                )
            return jsonify({"message": "An account with this email already exists."}), 409

        try:
            user_document = create_user_document(
                name or email.split("@")[0],
                email,
                password=password,
                role=role,
                phone=phone,
            )
        except DuplicateKeyError:
            return jsonify({"message": "An account with this email already exists."}), 409

        return auth_response(user_document, 201)

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user_document = db.users.find_one({"email": email})
        if not user_document or not password_matches(password, user_document.get("password")):
            return jsonify({"message": "Invalid credentials"}), 401

        touch_last_login(user_document)
        return auth_response(user_document)

    @app.route("/api/auth/google", methods=["POST"])
    def google_login():
        payload = request.get_json(silent=True) or {}
        id_token = str(payload_value(payload, "idToken", "id_token") or "").strip()
        if not id_token:
            return jsonify({"message": "idToken is required."}), 400

        client_id = app.config.get("GOOGLE_CLIENT_ID")
        if not client_id:
            return jsonify({"message": "Google sign-in is not configured."}), 500

        try:
            claims = verify_google_id_token(id_token, client_id)
        except GoogleTokenError as exc:
            app.logger.warning("Google sign-in rejected: %s", exc)
            return jsonify({"message": "Invalid Google token."}), 401

        google_id = str(claims.get("sub"))
        email = normalize_email(claims.get("email"))
        name = claims.get("name") or claims.get("given_name") or "Google User"

        user_document = db.users.find_one({"email": email})
        if not user_document:
            user_document = create_user_document(
                name, email, provider="google", google_id=google_id
            )
        elif user_document.get("provider", "local") != "google":
            return (
                jsonify({"message": "Email already registered with a password."}),
                409,
            )
        elif not user_document.get("google_id"):
            touch_last_login(user_document, {"google_id": google_id})
        else:
            touch_last_login(user_document)

        return auth_response(user_document)

    # Profile
    @app.route("/api/users/profile", methods=["GET", "PUT"])
    @jwt_required()
    def manage_profile():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        if request.method == "GET":
            return jsonify({"success": True, "user": serialize_user(current_user)})

        updated_user, update_error = apply_user_updates(
            current_user, request.get_json(silent=True) or {}
        )
        if update_error:
            return update_error

        return jsonify(
            {
                "success": True,
                "message": "Profile updated successfully.",
                "user": serialize_user(updated_user),
            }
        )

    # Favorites
    @app.route("/api/users/favorites", methods=["GET"])
    @jwt_required()
    def list_favorite_products():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        product_ids = current_user.get("favorites") or []
        products_by_id = {
            document["_id"]: document
            for document in db.products.find({"_id": {"$in": list(product_ids)}})
        }
        products = [
            serialize_product(products_by_id[product_id])
            for product_id in product_ids
            if product_id in products_by_id
        ]
        return jsonify({"success": True, "favorites": products})

    @app.route("/api/users/favorites", methods=["POST"])
    @app.route("/api/favorites", methods=["POST"])
    @jwt_required()
    def add_favorite_product():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        product_document, product_error = resolve_favorite_product(
            payload_value(payload, "productId", "product_id")
        )
        if product_error:
            return product_error

        favorites = add_favorite(current_user, product_document)
        return jsonify({"success": True, "favorites": favorites}), 201

    @app.route("/api/users/removeFavorites/<product_id>", methods=["DELETE"])
    @app.route("/api/favorites/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_favorite_product(product_id: str):
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        favorites = remove_favorite(current_user, product_id)
        return jsonify({"success": True, "favorites": favorites})

    @app.route("/api/users/favorites/toggle", methods=["PATCH"])
    @jwt_required()
    def toggle_favorite_product():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        product_document, product_error = resolve_favorite_product(
            payload_value(payload, "productId", "product_id")
        )
        if product_error:
            return product_error

        if product_document["_id"] in (current_user.get("favorites") or []):
            favorites = remove_favorite(current_user, str(product_document["_id"]))
            favorited = False
        else:
            favorites = add_favorite(current_user, product_document)
            favorited = True

        return jsonify({"success": True, "favorited": favorited, "favorites": favorites})

    @app.route("/api/favorites", methods=["GET"])
    @jwt_required()
    def list_favorite_ids():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        return jsonify({"success": True, "favorites": favorite_ids(current_user)})

    # Addresses
    @app.route("/api/users/address", methods=["POST"])
    @jwt_required()
    def add_address():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        address, address_error = build_address(request.get_json(silent=True) or {})
        if address_error:
            return jsonify({"message": address_error}), 400

        addresses = list(current_user.get("addresses") or [])
        addresses.append(address)
        apply_default_address_flags(addresses, address)
        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"addresses": addresses, "updated_at": utcnow()}},
        )

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Address added successfully.",
                    "address": serialize_address(address),
                    "addresses": [serialize_address(item) for item in addresses],
                }
            ),
            201,
        )

    @app.route("/api/users/getAddresses", methods=["GET"])
    @jwt_required()
    def list_addresses():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        return jsonify(
            {
                "success": True,
                "addresses": [
                    serialize_address(address)
                    for address in current_user.get("addresses") or []
                ],
            }
        )

    @app.route("/api/users/addresses/<address_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def manage_address(address_id: str):
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        address_object_id = parse_object_id(address_id)
        if not address_object_id:
            return jsonify({"message": "Invalid address identifier."}), 400

        addresses = list(current_user.get("addresses") or [])
        position = next(
            (
                index
                for index, address in enumerate(addresses)
                if address.get("_id") == address_object_id
            ),
            None,
        )
        if position is None:
            return jsonify({"message": "Address not found."}), 404

        if request.method == "DELETE":
            addresses.pop(position)
            db.users.update_one(
                {"_id": current_user["_id"]},
                {"$set": {"addresses": addresses, "updated_at": utcnow()}},
            )
            return jsonify(
                {
                    "success": True,
                    "message": "Address removed successfully.",
                    "addresses": [serialize_address(item) for item in addresses],
                }
            )

        address, address_error = build_address(
            request.get_json(silent=True) or {}, addresses[position]
        )
        if address_error:
            return jsonify({"message": address_error}), 400

        addresses[position] = address
        apply_default_address_flags(addresses, address)
        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"addresses": addresses, "updated_at": utcnow()}},
        )

        return jsonify(
            {
                "success": True,
                "message": "Address updated successfully.",
                "address": serialize_address(address),
                "addresses": [serialize_address(item) for item in addresses],
            }
        )

    # User administration
    @app.route("/api/users/all", methods=["GET"])
    @jwt_required()
    def list_users():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = parse_pagination_args()
        sort_field, sort_order = parse_sort_args(
            {"created_at", "updated_at", "name", "email", "last_login_at"}
        )

        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"email": regex}]

        role_filter = (request.args.get("role") or "").strip().lower()
        if role_filter:
            query["role"] = role_filter

        cursor = (
            db.users.find(query)
            .sort(sort_field, sort_order)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        users = [serialize_user_summary(document) for document in cursor]
        total = db.users.count_documents(query)

        return jsonify(
            {
                "success": True,
                "users": users,
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/users/stats", methods=["GET"])
    @jwt_required()
    def user_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        thirty_days_ago = utcnow() - timedelta(days=30)
        return jsonify(
            {
                "success": True,
                "stats": {
                    "total_users": db.users.count_documents({}),
                    "admin_users": db.users.count_documents({"role": "admin"}),
                    "regular_users": db.users.count_documents({"role": "user"}),
                    "google_users": db.users.count_documents({"provider": "google"}),
                    "local_users": db.users.count_documents({"provider": "local"}),
                    "recent_users": db.users.count_documents(
                        {"created_at": {"$gte": thirty_days_ago}}
                    ),
                },
            }
        )

    @app.route("/api/users/<user_id>", methods=["GET", "PUT", "DELETE"])
    @jwt_required()
    def manage_user(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        user_document, load_error = fetch_user(user_id)
        if load_error:
            return load_error

        if request.method == "GET":
            return jsonify({"success": True, "user": serialize_user(user_document)})

        if request.method == "PUT":
            updated_user, update_error = apply_user_updates(
                user_document, request.get_json(silent=True) or {}
            )
            if update_error:
                return update_error
            return jsonify(
                {
                    "success": True,
                    "message": "User updated successfully.",
                    "user": serialize_user(updated_user),
                }
            )

        if user_document["_id"] == admin_user["_id"]:
            return jsonify({"message": "You cannot delete your own account."}), 400

        db.users.delete_one({"_id": user_document["_id"]})
        app.logger.info(
            "User %s deleted by %s", user_document.get("email"), admin_user.get("email")
        )
        return jsonify({"success": True, "message": "User deleted successfully."})

    @app.route("/api/users/<user_id>/role", methods=["PATCH"])
    @jwt_required()
    def change_user_role(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        desired_role = str(payload.get("role") or "").strip().lower()
        if desired_role not in USER_ROLES:
            return jsonify({"message": "Role must be 'user' or 'admin'."}), 400

        user_document, load_error = fetch_user(user_id)
        if load_error:
            return load_error

        if user_document["_id"] == admin_user["_id"]:
            return jsonify({"message": "You cannot change your own role."}), 400

        db.users.update_one(
            {"_id": user_document["_id"]},
            {"$set": {"role": desired_role, "updated_at": utcnow()}},
        )
        updated_user = db.users.find_one({"_id": user_document["_id"]})

        return jsonify(
            {
                "success": True,
                "message": f"Role updated to {desired_role}.",
                "user": serialize_user(updated_user),
            }
        )

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        product_documents = db.products.find().sort("created_at", -1)
        products = [serialize_product(document) for document in product_documents]
        return jsonify({"success": True, "count": len(products), "products": products})

    @app.route("/api/products/admin", methods=["GET"])
    @jwt_required()
    def list_products_for_admin():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        rows = []
        for document in db.products.find().sort("created_at", -1):
            colors = document.get("colors") or []
            rows.append(
                {
                    "id": str(document["_id"]),
                    "name": document.get("name", ""),
                    "category": document.get("category", ""),
                    "price": (document.get("price") or {}).get("amount", 0),
                    "image": colors[0].get("image") if colors else None,
                }
            )
        return jsonify({"success": True, "count": len(rows), "products": rows})

    @app.route("/api/products/category/<category>", methods=["GET"])
    def list_products_by_category(category: str):
        product_documents = db.products.find({"category": category}).sort("created_at", -1)
        products = [serialize_product(document) for document in product_documents]
        return jsonify({"success": True, "count": len(products), "products": products})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        return jsonify({"success": True, "product": serialize_product(product_document)})

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        fields, field_error = build_product_fields(request_payload())
        if field_error:
            return jsonify({"message": field_error}), 400

        uploads = collect_uploaded_files(request.files)
        attach_color_images(fields["colors"], uploads)

        now = utcnow()
        product_document = expand_document_paths(fields)
        product_document.update(
            {
                "product_code": generate_product_code(),
                "rating": {"average": 0, "count": 0},
                "media": {"images": [], "video": None},
                "created_by": current_user["_id"],
                "created_at": now,
                "updated_at": now,
            }
        )

        result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": result.inserted_id})
        app.logger.info(
            "Product %s created with %s color images",
            result.inserted_id,
            len(color_image_urls(created_product.get("colors"))),
        )

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Product created successfully.",
                    "product": serialize_product(created_product),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        updates, field_error = build_product_fields(request_payload(), partial=True)
        if field_error:
            return jsonify({"message": field_error}), 400

        uploads = collect_uploaded_files(request.files)
        if not updates and not uploads:
            return jsonify({"message": "Provide at least one field to update."}), 400

        existing_colors = product_document.get("colors") or []
        if "colors" in updates or uploads:
            colors = updates.get("colors")
            if colors is None:
                colors = [dict(color) for color in existing_colors]
            for index, color in enumerate(colors):
                if not color.get("image") and index < len(existing_colors):
                    color["image"] = existing_colors[index].get("image", "")
            attach_color_images(colors, uploads)
            updates["colors"] = colors

        updates["updated_at"] = utcnow()
        db.products.update_one({"_id": product_document["_id"]}, {"$set": updates})

        if "colors" in updates:
            retained_urls = set(color_image_urls(updates["colors"]))
            for url in color_image_urls(existing_colors):
                if url not in retained_urls:
                    remove_uploaded_image(url, upload_root())

        updated_product = db.products.find_one({"_id": product_document["_id"]})
        return jsonify(
            {
                "success": True,
                "message": "Product updated successfully.",
                "product": serialize_product(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})

        stored_urls = color_image_urls(product_document.get("colors"))
        stored_urls.extend(
            str(url) for url in (product_document.get("media") or {}).get("images") or []
        )
        for url in stored_urls:
            remove_uploaded_image(url, upload_root())

        return jsonify(
            {"success": True, "message": "Product and images deleted successfully."}
        )

    # Cart
    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        items = current_user.get("cart") or []
        return jsonify(
            {
                "items": serialize_cart(items),
                "total_items": sum(int(item.get("quantity", 0) or 0) for item in items),
            }
        )

    @app.route("/api/cart", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        payload = request.get_json(silent=True) or {}
        raw_product_id = payload_value(payload, "productId", "product_id")
        if not raw_product_id:
            return jsonify({"message": "productId is required."}), 400

        raw_quantity = payload.get("quantity")
        quantity = parse_whole_number(1 if raw_quantity in (None, "") else raw_quantity)
        if quantity is None:
            return jsonify({"message": "Quantity must be a whole number."}), 400
        if quantity <= 0:
            return jsonify({"message": "Quantity must be greater than zero."}), 400

        product_document, product_error = fetch_product(str(raw_product_id))
        if product_error:
            return product_error

        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        selected_size = optional_text(payload_value(payload, "selectedSize", "selected_size"))
        selected_color = optional_text(
            payload_value(payload, "selectedColor", "selected_color")
        )

        items = list(current_user.get("cart") or [])
        existing = next(
            (
                item
                for item in items
                if cart_item_product_id(item) == str(product_document["_id"])
                and item.get("selected_size") == selected_size
                and item.get("selected_color") == selected_color
            ),
            None,
        )
        if existing:
            existing["quantity"] = int(existing.get("quantity", 0) or 0) + quantity
        else:
            snapshot = build_product_snapshot(product_document)
            items.append(
                {
                    "id": secrets.token_hex(12),
                    "product": snapshot,
                    "quantity": quantity,
                    "selected_size": selected_size,
                    "selected_color": selected_color,
                    "unit_price": snapshot["price"]["amount"] or 0,
                    "created_at": utcnow(),
                }
            )

        db.users.update_one({"_id": current_user["_id"]}, {"$set": {"cart": items}})
        return jsonify({"items": serialize_cart(items)}), 201

    @app.route("/api/cart/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_from_cart(product_id: str):
        current_user, load_error = load_current_user()
        if load_error:
            return load_error

        selected_size = optional_text(
            request.args.get("selectedSize") or request.args.get("selected_size")
        )
        selected_color = optional_text(
            request.args.get("selectedColor") or request.args.get("selected_color")
        )

        def matches(item: Dict) -> bool:
            if cart_item_product_id(item) != product_id:
                return False
            if selected_size and item.get("selected_size") != selected_size:
                return False
            if selected_color and item.get("selected_color") != selected_color:
                return False
            return True

        items = [item for item in current_user.get("cart") or [] if not matches(item)]
        db.users.update_one({"_id": current_user["_id"]}, {"$set": {"cart": items}})
        return jsonify({"items": serialize_cart(items)})

    # Feedback
    @app.route("/api/feedback/approved", methods=["GET"])
    def list_approved_feedback():
        query: Dict[str, object] = {"status": "approved"}
        rating_filter = parse_rating_filter()
        if rating_filter is not None:
            query["rating"] = rating_filter
        return list_feedback_page(query)

    @app.route("/api/feedback/create", methods=["POST"])
    @jwt_required(optional=True)
    def create_feedback():
        payload = request.get_json(silent=True) or {}
        name = str(payload.get("name") or "").strip()
        text = str(payload.get("text") or "").strip()
        raw_rating = payload.get("rating")

        if not name or not text or raw_rating in (None, ""):
            return (
                jsonify({"message": "Missing required fields: name, rating, text."}),
                400,
            )

        rating = parse_whole_number(raw_rating)
        if rating is None or rating < 1 or rating > 5:
            return jsonify({"message": "Rating must be between 1 and 5."}), 400

        if len(text) > FEEDBACK_TEXT_MAX_LENGTH:
            return (
                jsonify(
                    {
                        "message": f"Feedback text must be {FEEDBACK_TEXT_MAX_LENGTH} characters or fewer."
                    }
                ),
                400,
            )

        now = utcnow()
        feedback_document = {
            "name": name,
            "rating": rating,
            "text": text,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        user_id = parse_object_id(get_jwt_identity()) if get_jwt_identity() else None
        if user_id:
            feedback_document["user"] = user_id

        insert_result = db.feedback.insert_one(feedback_document)
        feedback_document["_id"] = insert_result.inserted_id

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Feedback submitted successfully.",
                    "feedback": serialize_feedback(
                        feedback_document, build_feedback_user_names([feedback_document])
                    ),
                }
            ),
            201,
        )

    @app.route("/api/feedback", methods=["GET"])
    @jwt_required()
    def list_all_feedback():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        query: Dict[str, object] = {}
        status_filter = (request.args.get("status") or "").strip().lower()
        if status_filter:
            query["status"] = status_filter
        rating_filter = parse_rating_filter()
        if rating_filter is not None:
            query["rating"] = rating_filter
        return list_feedback_page(query)

    @app.route("/api/feedback/stats", methods=["GET"])
    @jwt_required()
    def feedback_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        rating_summary = list(
            db.feedback.aggregate(
                [
                    {
                        "$group": {
                            "_id": None,
                            "average_rating": {"$avg": "$rating"},
                            "total_ratings": {"$sum": 1},
                        }
                    }
                ]
            )
        )
        rating_distribution = list(
            db.feedback.aggregate(
                [
                    {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
                    {"$sort": {"_id": 1}},
                ]
            )
        )
        thirty_days_ago = utcnow() - timedelta(days=30)

        return jsonify(
            {
                "success": True,
                "stats": {
                    "total_feedback": db.feedback.count_documents({}),
                    "pending_feedback": db.feedback.count_documents({"status": "pending"}),
                    "approved_feedback": db.feedback.count_documents({"status": "approved"}),
                    "rejected_feedback": db.feedback.count_documents({"status": "rejected"}),
                    "average_rating": rating_summary[0]["average_rating"]
                    if rating_summary
                    else 0,
                    "rating_distribution": [
                        {"rating": entry["_id"], "count": entry["count"]}
                        for entry in rating_distribution
                    ],
                    "recent_feedback": db.feedback.count_documents(
                        {"created_at": {"$gte": thirty_days_ago}}
                    ),
                },
            }
        )

    @app.route("/api/feedback/<feedback_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_feedback_status(feedback_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status") or "").strip().lower()
        if status not in FEEDBACK_STATUSES:
            return (
                jsonify(
                    {"message": "Status must be 'pending', 'approved', or 'rejected'."}
                ),
                400,
            )

        feedback_object_id = parse_object_id(feedback_id)
        if not feedback_object_id:
            return jsonify({"message": "Invalid feedback identifier."}), 400

        updates: Dict[str, object] = {"status": status, "updated_at": utcnow()}
        admin_response = payload_value(payload, "adminResponse", "admin_response")
        if admin_response is not None:
            updates["admin_response"] = str(admin_response).strip()
            updates["responded_by"] = admin_user["_id"]
            updates["responded_at"] = utcnow()

        update_result = db.feedback.update_one(
            {"_id": feedback_object_id}, {"$set": updates}
        )
        if update_result.matched_count == 0:
            return jsonify({"message": "Feedback not found."}), 404

        feedback_document = db.feedback.find_one({"_id": feedback_object_id})
        return jsonify(
            {
                "success": True,
                "message": "Feedback status updated successfully.",
                "feedback": serialize_feedback(
                    feedback_document, build_feedback_user_names([feedback_document])
                ),
            }
        )

    @app.route("/api/feedback/<feedback_id>", methods=["DELETE"])
    @jwt_required()
    def delete_feedback(feedback_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        feedback_object_id = parse_object_id(feedback_id)
        if not feedback_object_id:
            return jsonify({"message": "Invalid feedback identifier."}), 400

        delete_result = db.feedback.delete_one({"_id": feedback_object_id})
        if delete_result.deleted_count == 0:
            return jsonify({"message": "Feedback not found."}), 404

        return jsonify({"success": True, "message": "Feedback deleted successfully."})

    return app
