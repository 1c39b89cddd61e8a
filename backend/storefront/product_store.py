from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


class ProductStore:
    """Product documents in a MongoDB collection.

    Store errors (``pymongo.errors.PyMongoError``) propagate to the caller.
    """

    def __init__(self, collection):
        self.collection = collection

    def find_by_id(self, product_id) -> Optional[Dict]:
        object_id = parse_object_id(product_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id})

    def find(
        self, filters: Optional[Dict] = None, sort: Optional[List[Tuple[str, int]]] = None
    ) -> List[Dict]:
        cursor = self.collection.find(filters or {})
        if sort:
            cursor = cursor.sort(sort)
        return list(cursor)

    def save(self, product: Dict) -> Dict:
        document = dict(product)
        if document.get("_id") is None:
            document.pop("_id", None)
            document.setdefault("created_at", datetime.utcnow())
            result = self.collection.insert_one(document)
            document["_id"] = result.inserted_id
            return document

        document["updated_at"] = datetime.utcnow()
        self.collection.replace_one({"_id": document["_id"]}, document)
        return self.collection.find_one({"_id": document["_id"]})

    def find_by_id_and_delete(self, product_id) -> Optional[Dict]:
        object_id = parse_object_id(product_id)
        if object_id is None:
            return None
        return self.collection.find_one_and_delete({"_id": object_id})

    def count(self) -> int:
        return self.collection.count_documents({})

    def insert_many(self, products: Iterable[Dict]):
        documents = list(products)
        if documents:
            self.collection.insert_many(documents)
