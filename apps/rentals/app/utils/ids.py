from uuid import UUID

from ..errors import NotFound


def as_uuid(value, what: str = "Resource") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise NotFound(f"{what} not found")
