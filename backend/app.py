import json
import os
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional, Tuple

import bcrypt
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from image_relay import ImageRelay, ImageRelayError
from schemas import ProductCreate, format_validation_errors
from stores import (
    DuplicateEmailError,
    ProductStore,
    UserStore,
    build_product_filter,
    normalize_email,
    parse_object_id,
    serialize_document,
)

load_dotenv()

DEFAULT_TOKEN_LIFETIME = timedelta(days=1)
# bcrypt input limit
MAX_PASSWORD_BYTES = 72
DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: Optional[str], default: timedelta = DEFAULT_TOKEN_LIFETIME) -> timedelta:
    """Read token lifetimes written as ``45s``, ``30m``, ``12h``, ``7d`` or plain seconds."""
    if not value:
        return default
    match = DURATION_PATTERN.match(str(value))
    if not match:
        return default
    amount, unit = match.groups()
    return timedelta(**{DURATION_UNITS[unit.lower()]: int(amount)})


def create_app(
    config: Optional[Mapping] = None,
    database=None,
    image_relay: Optional[ImageRelay] = None,
) -> Flask:
    """Create and configure the Flask application.

    ``database`` and ``image_relay`` default to a PyMongo connection and a
    Cloudinary relay built from the configuration; tests pass their own.
    """
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = parse_duration(os.getenv("JWT_EXPIRES_IN"))
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/flashmart"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["BCRYPT_ROUNDS"] = int(os.getenv("BCRYPT_ROUNDS", "10"))

    app.config["CLOUDINARY_CLOUD_NAME"] = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    app.config["CLOUDINARY_API_KEY"] = os.getenv("CLOUDINARY_API_KEY", "")
    app.config["CLOUDINARY_API_SECRET"] = os.getenv("CLOUDINARY_API_SECRET", "")
    app.config["CLOUDINARY_FOLDER"] = os.getenv("CLOUDINARY_FOLDER", "flashmart/products")
    app.config["CLOUDINARY_TIMEOUT"] = float(os.getenv("CLOUDINARY_TIMEOUT", "30"))

    # Uploads only wait here until the image host has them.
    app.config["UPLOAD_FOLDER"] = os.getenv(
        "UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")
    )
    app.config["PRODUCT_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}

    if config:
        app.config.update(config)

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = []
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)

    CORS(app, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db

    if image_relay is None:
        image_relay = ImageRelay(
            app.config["CLOUDINARY_CLOUD_NAME"],
            app.config["CLOUDINARY_API_KEY"],
            app.config["CLOUDINARY_API_SECRET"],
            app.logger,
            timeout=app.config["CLOUDINARY_TIMEOUT"],
        )

    users = UserStore(database.users, app.logger)
    products = ProductStore(database.products, app.logger)
    users.ensure_indexes()
    products.ensure_indexes()

    app.extensions["flashmart"] = {
        "users": users,
        "products": products,
        "image_relay": image_relay,
    }

    # --- Helpers ---

    def failure(message: str, status: int, **extra):
        body = {"success": False, "message": message}
        body.update(extra)
        return jsonify(body), status

    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=app.config["BCRYPT_ROUNDS"])
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def password_matches(password: str, stored_hash) -> bool:
        if not stored_hash:
            return False
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
        except ValueError:
            return False

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PRODUCT_ALLOWED_EXTENSIONS"]

    def stage_product_image(image_file) -> Tuple[Optional[str], Optional[str]]:
        original_filename = secure_filename(image_file.filename or "")
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_name = f"file-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
        destination = os.path.join(app.config["UPLOAD_FOLDER"], f"{unique_name}{extension}")

        try:
            image_file.save(destination)
        except OSError as exc:
            app.logger.error("Unable to stage uploaded image: %s", exc)
            return None, "We could not store the uploaded image. Please try again."

        return destination, None

    def read_json_object() -> Tuple[Optional[Dict], Optional[tuple]]:
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return None, failure("Request body must be a JSON object.", 400)
        return payload, None

    def text_field(payload: Dict, field: str) -> str:
        value = payload.get(field)
        if value is None:
            return ""
        return str(value)

    def read_product_payload() -> Tuple[Optional[Dict], Optional[tuple]]:
        raw_data = request.form.get("data")
        if raw_data is None:
            payload = request.get_json(silent=True)
            if payload is None:
                return None, failure("Product data is required.", 400)
        else:
            try:
                payload = json.loads(raw_data)
            except ValueError:
                return None, failure("Product data must be valid JSON.", 400)

        if not isinstance(payload, dict):
            return None, failure("Product data must be a JSON object.", 400)
        return payload, None

    # --- Error handling ---

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return failure("Authentication required.", 401)

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return failure("Invalid authentication token.", 401)

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return failure("Authentication token has expired.", 401)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return failure(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc: PyMongoError):
        app.logger.error("Database operation failed: %s", exc)
        return failure("The database is unavailable. Please try again later.", 503)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        app.logger.exception("Unhandled error: %s", exc)
        return failure("Internal server error", 500)

    # --- ROUTES ---

    @app.route("/")
    def server_status():
        return jsonify(
            {
                "message": "Server is running smoothly",
                "timestamp": datetime.utcnow().isoformat() + "Z",
            }
        )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/v1/register", methods=["POST"])
    def register():
        payload, payload_error = read_json_object()
        if payload_error:
            return payload_error

        name = text_field(payload, "name").strip()
        email = normalize_email(text_field(payload, "email"))
        password = text_field(payload, "password")

        if not name or not email or not password:
            return failure("Name, email, and password are required.", 400)

        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return failure(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.", 400)

        if users.exists(email):
            return failure("User already exists", 400)

        try:
            users.create(name, email, hash_password(password))
        except DuplicateEmailError:
            return failure("User already exists", 400)

        return jsonify({"success": True, "message": "User registered successfully"}), 201

    @app.route("/api/v1/login", methods=["POST"])
    def login():
        payload, payload_error = read_json_object()
        if payload_error:
            return payload_error

        email = normalize_email(text_field(payload, "email"))
        password = text_field(payload, "password")

        if not email or not password:
            return failure("Email and password are required.", 400)

        user = users.find_by_email(email)
        if not user or not password_matches(password, user.get("password")):
            return failure("Invalid email or password", 401)

        token = create_access_token(identity=email, additional_claims={"email": email})
        return jsonify({"success": True, "message": "Login successful", "token": token})

    @app.route("/api/v1/create-product", methods=["POST"])
    @jwt_required()
    def create_product():
        payload, payload_error = read_product_payload()
        if payload_error:
            return payload_error

        try:
            product = ProductCreate.model_validate(payload)
        except ValidationError as exc:
            errors = format_validation_errors(exc)
            return failure(errors[0]["message"], 400, errors=errors)

        image = {"url": "", "publicId": ""}
        image_file = request.files.get("file")
        if image_file and getattr(image_file, "filename", ""):
            staged_path, staging_error = stage_product_image(image_file)
            if staging_error:
                return failure(staging_error, 400)

            public_id = os.path.splitext(os.path.basename(staged_path))[0]
            try:
                image = image_relay.upload(
                    staged_path, public_id, app.config["CLOUDINARY_FOLDER"]
                )
            except ImageRelayError as exc:
                app.logger.error("Product image upload failed: %s", exc)
                return failure("We could not upload the product image. Please try again.", 502)

        document = product.model_dump()
        document["image"] = image
        try:
            result = products.create(document)
        except PyMongoError:
            if image["publicId"]:
                app.logger.warning(
                    "Product insert failed, removing orphaned image %s", image["publicId"]
                )
                image_relay.destroy(image["publicId"])
            raise

        app.logger.info(
            "Product %s (%s) created by %s",
            result.inserted_id,
            product.title,
            get_jwt_identity(),
        )

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Product created successfully",
                    "data": {
                        "acknowledged": result.acknowledged,
                        "insertedId": str(result.inserted_id),
                    },
                }
            ),
            201,
        )

    @app.route("/api/v1/products", methods=["GET"])
    def list_products():
        query, filter_error = build_product_filter(request.args.to_dict())
        if filter_error:
            return failure(filter_error, 400)

        documents = [serialize_document(document) for document in products.find(query)]
        return jsonify(
            {
                "success": True,
                "message": "Products retrieved successfully",
                "metaData": {"total": len(documents)},
                "data": documents,
            }
        )

    @app.route("/api/v1/product/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        object_id = parse_object_id(product_id)
        if object_id is None:
            return failure("Invalid product identifier.", 400)

        document = products.get(object_id)
        if not document:
            return failure("Product not found.", 404)

        return jsonify(
            {
                "success": True,
                "message": "Product retrieved successfully",
                "data": serialize_document(document),
            }
        )

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
