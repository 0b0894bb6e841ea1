from bson import ObjectId
from bson.errors import InvalidId

from utils.errors import NotFound

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        # A malformed id can never match a document
        raise NotFound(name, value)


def optional_object_id(value, name: str = "id") -> ObjectId | None:
    if value is None:
        return None
    return parse_object_id(value, name)
