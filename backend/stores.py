import math
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError, PyMongoError

NOT_DELETED = {"isDeleted": {"$ne": True}}
HIDDEN_FIELDS = {"isDeleted": 0}

# Query parameters with their own meaning in the product listing.
RESERVED_PRODUCT_PARAMS = {"searchTerm", "category", "rating"}
BOOLEAN_PRODUCT_FIELDS = {"isTrending", "isFlashSale"}
NUMERIC_PRODUCT_FIELDS = {"price"}


class DuplicateEmailError(Exception):
    pass


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def parse_object_id(value) -> Optional[ObjectId]:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def coerce_query_value(field: str, value: str):
    if field in BOOLEAN_PRODUCT_FIELDS:
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        return value

    if field in NUMERIC_PRODUCT_FIELDS:
        try:
            return float(value)
        except ValueError:
            return value

    return value


def build_product_filter(params: Mapping[str, str]) -> Tuple[Optional[Dict], Optional[str]]:
    """Merge listing query parameters into one Mongo filter.

    Every parameter that is not reserved becomes an equality match. Operator
    (``$``) and dotted keys are refused. ``category`` is an exact match,
    ``rating`` is a minimum, and ``searchTerm`` is accepted but has no effect.
    Returns ``(filter, error_message)``.
    """
    for field in params:
        if not field or field.startswith("$") or "." in field:
            return None, f"Unsupported filter field: {field}"

    query: Dict = {
        field: coerce_query_value(field, value)
        for field, value in params.items()
        if field not in RESERVED_PRODUCT_PARAMS
    }

    category = params.get("category")
    if category:
        query["category"] = category

    raw_rating = params.get("rating")
    if raw_rating not in (None, ""):
        try:
            minimum_rating = float(raw_rating)
        except (TypeError, ValueError):
            return None, "Rating filter must be a number."
        if math.isnan(minimum_rating):
            return None, "Rating filter must be a number."
        query["rating"] = {"$gte": minimum_rating}

    query.update(NOT_DELETED)
    return query, None


def serialize_document(document: Optional[Dict]) -> Optional[Dict]:
    if document is None:
        return None
    serialized = dict(document)
    if "_id" in serialized:
        serialized["_id"] = str(serialized["_id"])
    created_at = serialized.get("created_at")
    if isinstance(created_at, datetime):
        serialized["created_at"] = created_at.isoformat() + "Z"
    return serialized


class UserStore:
    """Credential store backed by the ``users`` collection."""

    def __init__(self, collection, logger):
        self.collection = collection
        self.logger = logger

    def ensure_indexes(self):
        try:
            self.collection.create_index("email", unique=True)
        except PyMongoError as exc:
            self.logger.warning("Unable to ensure unique index for user emails: %s", exc)

    def exists(self, email: str) -> bool:
        return self.collection.find_one({"email": email}, {"_id": 1}) is not None

    def create(self, name: str, email: str, password_hash: str):
        try:
            return self.collection.insert_one(
                {
                    "name": name,
                    "email": email,
                    "password": password_hash,
                    "created_at": datetime.utcnow(),
                }
            )
        except DuplicateKeyError as exc:
            raise DuplicateEmailError(email) from exc

    def find_by_email(self, email: str) -> Optional[Dict]:
        return self.collection.find_one({"email": email})


class ProductStore:
    """Product store backed by the ``products`` collection.

    Reads never return soft-deleted documents and never expose ``isDeleted``.
    """

    def __init__(self, collection, logger):
        self.collection = collection
        self.logger = logger

    def ensure_indexes(self):
        try:
            self.collection.create_index([("category", 1), ("rating", -1)])
        except PyMongoError as exc:
            self.logger.warning("Unable to ensure indexes for products: %s", exc)

    def create(self, product: Dict):
        document = dict(product)
        document["isDeleted"] = False
        document["created_at"] = datetime.utcnow()
        return self.collection.insert_one(document)

    def find(self, query: Dict) -> List[Dict]:
        return list(self.collection.find(query, HIDDEN_FIELDS))

    def get(self, object_id: ObjectId) -> Optional[Dict]:
        query = {"_id": object_id}
        query.update(NOT_DELETED)
        return self.collection.find_one(query, HIDDEN_FIELDS)
