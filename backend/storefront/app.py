import math
import os
import re
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import bcrypt
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException, NotFound
from werkzeug.middleware.proxy_fix import ProxyFix

from storefront.image_storage import ImageReconciler, LocalImageStore, S3ImageStore
from storefront.product_store import ProductStore, parse_object_id
from storefront.settings import Settings

SEED_PRODUCTS = [
    {
        "name": "Nike Slim Shirt",
        "image": "/images/p1.jpg",
        "brand": "Nike",
        "price": 120,
        "category": "Shirts",
        "countInStock": 10,
        "description": "High quality product",
        "rating": 4.5,
        "numReviews": 10,
    },
    {
        "name": "Adidas Fit Shirt",
        "image": "/images/p2.jpg",
        "brand": "Adidas",
        "price": 100,
        "category": "Shirts",
        "countInStock": 20,
        "description": "High quality product",
        "rating": 4.0,
        "numReviews": 10,
    },
    {
        "name": "Lacoste Free Shirt",
        "image": "/images/p3.jpg",
        "brand": "Lacoste",
        "price": 220,
        "category": "Shirts",
        "countInStock": 0,
        "description": "High quality product",
        "rating": 4.8,
        "numReviews": 17,
    },
    {
        "name": "Nike Slim Pant",
        "image": "/images/d1.jpg",
        "brand": "Nike",
        "price": 78,
        "category": "Pants",
        "countInStock": 15,
        "description": "High quality product",
        "rating": 4.5,
        "numReviews": 14,
    },
    {
        "name": "Puma Slim Pant",
        "image": "/images/d2.jpg",
        "brand": "Puma",
        "price": 65,
        "category": "Pants",
        "countInStock": 5,
        "description": "High quality product",
        "rating": 4.5,
        "numReviews": 10,
    },
    {
        "name": "Adidas Fit Pant",
        "image": "/images/d3.jpg",
        "brand": "Adidas",
        "price": 139,
        "category": "Pants",
        "countInStock": 12,
        "description": "High quality product",
        "rating": 4.5,
        "numReviews": 15,
    },
]

PRODUCT_TEXT_FIELDS = ("name", "brand", "category", "description")


def create_app(settings: Optional[Settings] = None, db=None, s3_client=None) -> Flask:
    """Create and configure the Flask application.

    ``db`` and ``s3_client`` replace the MongoDB database and the boto3 client
    built from ``settings``; tests pass in-memory stand-ins.
    """
    settings = settings or Settings.from_env()
    app = Flask(__name__)

    # Honor proxy headers so generated links keep the public HTTPS origin.
    if settings.trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=settings.trusted_proxy_hops,
            x_proto=settings.trusted_proxy_hops,
            x_host=settings.trusted_proxy_hops,
            x_port=settings.trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=settings.jwt_expires_hours)
    app.config["MONGO_URI"] = settings.mongo_uri
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_size_mb * 1024 * 1024

    storage_root = settings.storage_root or app.root_path

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=settings.cors_allowed_origins or "*")
    JWTManager(app)

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    products = ProductStore(db.products)
    audit_logs_collection = db.audit_logs

    local_images = LocalImageStore(storage_root, settings, logger=app.logger)
    local_images.ensure_folder()
    remote_images = S3ImageStore(settings.s3, client=s3_client, logger=app.logger)
    images = ImageReconciler(settings, local_images, remote_images, logger=app.logger)

    if remote_images.is_configured:
        app.logger.info("S3 client configured for bucket %s", settings.s3.bucket_name)
    else:
        app.logger.warning("S3 not configured. Using local file deletion only.")

    app.extensions["storefront"] = {
        "settings": settings,
        "products": products,
        "images": images,
    }
    started_at = time.monotonic()

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_admin_user(user_document) -> bool:
        if not user_document:
            return False
        if normalize_email(user_document.get("email")) == settings.default_admin_email:
            return True
        return str(user_document.get("role", "")).strip().lower() == "admin"

    def current_user_document():
        current_email = normalize_email(get_jwt_identity())
        if not current_email:
            return None
        return db.users.find_one({"email": current_email})

    def require_admin_user():
        current_user = current_user_document()
        if is_admin_user(current_user):
            return current_user, None

        return (
            None,
            (jsonify({"message": "Admin Token is not valid."}), 403),
        )

    def serialize_user(user_document, token: str) -> Dict[str, object]:
        return {
            "_id": str(user_document.get("_id")),
            "name": user_document.get("name", ""),
            "email": user_document.get("email", ""),
            "isAdmin": is_admin_user(user_document),
            "token": token,
        }

    def issue_token(user_document) -> str:
        return create_access_token(
            identity=normalize_email(user_document.get("email")),
            additional_claims={"isAdmin": is_admin_user(user_document)},
        )

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(
        actor_email: Optional[str], action: str, metadata: Optional[Dict] = None
    ):
        if not action:
            return
        try:
            audit_logs_collection.insert_one(
                {
                    "user_email": normalize_email(actor_email) or None,
                    "action": action,
                    "metadata": sanitize_metadata(metadata),
                    "created_at": datetime.utcnow(),
                }
            )
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def isoformat(value) -> Optional[str]:
        return value.isoformat() if isinstance(value, datetime) else None

    def safe_float(value, default=0.0):
        try:
            result = float(value)
        except (TypeError, ValueError):
            return default
        if not math.isfinite(result):
            return default
        return result

    def serialize_review(review: Dict) -> Dict[str, object]:
        return {
            "name": review.get("name", ""),
            "rating": safe_float(review.get("rating")),
            "comment": review.get("comment", ""),
            "createdAt": isoformat(review.get("created_at")),
        }

    def serialize_product(product_document) -> Dict[str, object]:
        reviews = product_document.get("reviews")
        return {
            "_id": str(product_document.get("_id")),
            "name": product_document.get("name", ""),
            "price": safe_float(product_document.get("price")),
            "image": product_document.get("image", ""),
            "brand": product_document.get("brand", ""),
            "category": product_document.get("category", ""),
            "countInStock": int(safe_float(product_document.get("countInStock"))),
            "description": product_document.get("description", ""),
            "rating": safe_float(product_document.get("rating")),
            "numReviews": int(safe_float(product_document.get("numReviews"))),
            "reviews": [
                serialize_review(review)
                for review in (reviews if isinstance(reviews, list) else [])
            ],
            "createdAt": isoformat(product_document.get("created_at")),
            "updatedAt": isoformat(product_document.get("updated_at")),
        }

    def normalize_product_payload(
        payload: Dict, partial: bool = False
    ) -> Tuple[Dict[str, object], Optional[str]]:
        fields: Dict[str, object] = {}

        for key in PRODUCT_TEXT_FIELDS:
            if key in payload:
                fields[key] = str(payload.get(key) or "").strip()

        if not partial and not fields.get("name"):
            return {}, "A product name is required."
        if partial and "name" in fields and not fields["name"]:
            return {}, "A product name is required."

        if "price" in payload or not partial:
            try:
                price_value = round(float(payload.get("price")), 2)
            except (TypeError, ValueError):
                return {}, "Price must be a valid number."
            if not math.isfinite(price_value) or price_value < 0:
                return {}, "Price must be zero or greater."
            fields["price"] = price_value

        if "countInStock" in payload:
            try:
                stock_value = int(payload.get("countInStock") or 0)
            except (TypeError, ValueError):
                return {}, "Stock count must be a whole number."
            if stock_value < 0:
                return {}, "Stock count cannot be negative."
            fields["countInStock"] = stock_value

        for key in ("rating", "numReviews"):
            if key in payload:
                fields[key] = safe_float(payload.get(key))

        image_value = str(payload.get("image") or "").strip()
        if image_value:
            fields["image"] = image_value

        return fields, None

    def fetch_product(product_id: str):
        if parse_object_id(product_id) is None:
            return None, (jsonify({"message": "Invalid product identifier."}), 400)

        try:
            product_document = products.find_by_id(product_id)
        except PyMongoError as exc:
            app.logger.error("Error fetching product %s: %s", product_id, exc)
            return None, (
                jsonify({"message": f"Error fetching product details: {exc}"}),
                500,
            )

        if product_document is None:
            return None, (jsonify({"message": "Product Not Found."}), 404)

        return product_document, None

    def ensure_seed_products():
        if products.count() > 0:
            return
        timestamp = datetime.utcnow()
        products.insert_many(
            {**product, "reviews": [], "created_at": timestamp}
            for product in SEED_PRODUCTS
        )

    def read_payload() -> Dict:
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            return payload
        return request.form.to_dict() if request.form else {}

    # --- Error handling ---

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        if isinstance(error, NotFound) and request.path.startswith("/api/"):
            return jsonify({"message": "API endpoint not found"}), 404
        return jsonify({"message": error.description}), error.code

    # --- ROUTES ---

    @app.route("/api/health", methods=["GET"])
    def api_health():
        return jsonify(
            {
                "status": "healthy",
                "timestamp": datetime.utcnow().isoformat() + "Z",
                "uptime": round(time.monotonic() - started_at, 3),
                "environment": settings.environment,
            }
        )

    @app.route(f"{settings.local_upload_prefix}<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(local_images.upload_folder, filename)

    # Users
    @app.route("/api/users/register", methods=["POST"])
    def register():
        payload = read_payload()
        name = str(payload.get("name", "")).strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not name or not email or not password:
            return jsonify({"message": "Name, email and password are required."}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 409

        user_document = {
            "name": name,
            "email": email,
            "password_hash": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "role": "standard",
            "created_at": datetime.utcnow(),
        }
        result = db.users.insert_one(user_document)
        user_document["_id"] = result.inserted_id

        return jsonify(serialize_user(user_document, issue_token(user_document))), 201

    @app.route("/api/users/signin", methods=["POST"])
    def signin():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        user_document = db.users.find_one({"email": email}) if email else None
        password_hash = (user_document or {}).get("password_hash")
        if isinstance(password_hash, str):
            password_hash = password_hash.encode("utf-8")

        if not password_hash or not bcrypt.checkpw(password.encode("utf-8"), password_hash):
            return jsonify({"message": "Invalid Email or Password."}), 401

        return jsonify(serialize_user(user_document, issue_token(user_document)))

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        ensure_seed_products()

        filters: Dict[str, object] = {}
        category = str(request.args.get("category", "")).strip()
        if category:
            filters["category"] = category

        search_keyword = str(request.args.get("searchKeyword", "")).strip()
        if search_keyword:
            filters["name"] = {"$regex": re.escape(search_keyword), "$options": "i"}

        sort_order = str(request.args.get("sortOrder", "")).strip()
        if sort_order:
            sort: List[Tuple[str, int]] = [("price", 1 if sort_order == "lowest" else -1)]
        else:
            sort = [("_id", -1)]

        product_docs = products.find(filters, sort)
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify(serialize_product(product_document))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        fields, validation_error = normalize_product_payload(read_payload())
        if validation_error:
            return jsonify({"message": validation_error}), 400

        fields.setdefault("image", settings.default_product_image)
        fields.setdefault("rating", 0)
        fields.setdefault("numReviews", 0)
        fields.setdefault("countInStock", 0)
        fields["reviews"] = []

        try:
            new_product = products.save(fields)
        except PyMongoError as exc:
            app.logger.error("Error creating product: %s", exc)
            return jsonify({"message": f"Error in Creating Product: {exc}"}), 500

        record_audit_log(
            current_user.get("email"),
            "Created product",
            {"product_id": str(new_product.get("_id")), "product_name": fields["name"]},
        )

        return (
            jsonify({"message": "New Product Created", "data": serialize_product(new_product)}),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        fields, validation_error = normalize_product_payload(read_payload(), partial=True)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        old_image = product_document.get("image")
        new_image = fields.get("image")

        try:
            updated_product = products.save({**product_document, **fields})
        except PyMongoError as exc:
            app.logger.error("Error updating product %s: %s", product_id, exc)
            return jsonify({"message": "Error in Updating Product."}), 500

        if not updated_product:
            return jsonify({"message": "Error in Updating Product."}), 500

        response = {"message": "Product Updated", "data": serialize_product(updated_product)}

        release_outcome = images.after_update(old_image, new_image)
        if release_outcome is not None:
            response["imageRelease"] = release_outcome.to_dict()

        record_audit_log(
            current_user.get("email"),
            "Updated product",
            {
                "product_id": str(updated_product.get("_id")),
                "product_name": updated_product.get("name", ""),
                "image_release": release_outcome.detail if release_outcome else None,
            },
        )

        return jsonify(response)

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        image_url = product_document.get("image")

        try:
            deleted_product = products.find_by_id_and_delete(product_document["_id"])
        except PyMongoError as exc:
            app.logger.error("Error in product deletion %s: %s", product_id, exc)
            return jsonify({"message": f"Error in Deletion: {exc}"}), 500

        if not deleted_product:
            return jsonify({"message": "Product Not Found."}), 404

        record_audit_log(
            current_user.get("email"),
            "Deleted product",
            {
                "product_id": str(deleted_product.get("_id")),
                "product_name": deleted_product.get("name", ""),
            },
        )

        release_outcome = images.after_delete(image_url)
        if release_outcome is None:
            return jsonify({"message": "Product deleted (no custom image to remove)"})

        if release_outcome.success:
            return jsonify(
                {
                    "message": "Product and associated image deleted successfully",
                    "imageResult": release_outcome.detail,
                }
            )

        return jsonify(
            {
                "message": "Product deleted, but failed to delete image",
                "imageError": release_outcome.detail,
            }
        )

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def create_review(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        payload = read_payload()
        rating_value = safe_float(payload.get("rating"), default=-1)
        if rating_value < 0 or rating_value > 5:
            return jsonify({"message": "Rating must be between 0 and 5."}), 400

        current_user = current_user_document() or {}
        review = {
            "name": str(payload.get("name") or current_user.get("name") or "").strip(),
            "rating": rating_value,
            "comment": str(payload.get("comment") or "").strip(),
            "created_at": datetime.utcnow(),
        }

        reviews = list(product_document.get("reviews") or [])
        reviews.append(review)
        product_document["reviews"] = reviews
        product_document["numReviews"] = len(reviews)
        product_document["rating"] = sum(
            safe_float(item.get("rating")) for item in reviews
        ) / len(reviews)

        try:
            products.save(product_document)
        except PyMongoError as exc:
            app.logger.error("Error saving review for %s: %s", product_id, exc)
            return jsonify({"message": "Error in Saving Review."}), 500

        return (
            jsonify({"data": serialize_review(review), "message": "Review saved successfully."}),
            201,
        )

    @app.route("/api/products/test-s3-key", methods=["POST"])
    @jwt_required()
    def inspect_image_reference():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        image_url = read_payload().get("imageUrl")
        classified = images.classify(image_url)
        return jsonify(
            {
                "imageUrl": image_url,
                "extractedKey": classified.key,
                "backend": classified.backend.value,
                "reason": classified.reason,
                "bucketName": settings.s3.bucket_name,
            }
        )

    # Uploads
    @app.route("/api/uploads", methods=["POST"])
    @jwt_required()
    def upload_local_image():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        image_reference, upload_error = local_images.save(request.files.get("image"))
        if upload_error:
            return jsonify({"message": upload_error}), 400
        return jsonify({"image": image_reference})

    @app.route("/api/uploads/s3", methods=["POST"])
    @jwt_required()
    def upload_s3_image():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        if not remote_images.is_configured:
            return jsonify({"message": "S3 not configured"}), 503

        image_url, upload_error = remote_images.upload(request.files.get("image"))
        if upload_error:
            status = 500 if upload_error.startswith("S3 upload failed") else 400
            return jsonify({"message": upload_error}), status
        return jsonify({"image": image_url})

    @app.route("/api/uploads", methods=["DELETE"])
    @jwt_required()
    def delete_uploaded_image():
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        image_url = read_payload().get("imageUrl")
        outcome = images.release_if_eligible(image_url)
        record_audit_log(
            current_user.get("email"),
            "Deleted image",
            {"image_url": image_url, "result": outcome.detail},
        )
        return jsonify({"message": outcome.detail, "result": outcome.to_dict()}), (
            200 if outcome.success else 400
        )

    return app


app = create_app()


@app.route("/health")
def health():
    return {"status": "ok"}, 200


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
