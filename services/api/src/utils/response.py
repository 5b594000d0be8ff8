import math
from typing import Any, Dict, Optional, Sequence

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from clients.store import BaseDocumentModel

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


class RequestBody(BaseModel):
    """Request payloads arrive in camelCase; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _camel_key(key: str) -> str:
    if "_" not in key:
        return key
    return to_camel(key)


def camelize(value: Any) -> Any:
    """Recursively rewrite snake_case dict keys to camelCase."""
    if isinstance(value, dict):
        return {_camel_key(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [camelize(v) for v in value]
    return value


def serialize(value: Any) -> Any:
    if isinstance(value, BaseDocumentModel):
        return value.public_dict()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        return camelize(jsonable_encoder({k: serialize(v) for k, v in value.items()}))
    return jsonable_encoder(value)


def success(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = serialize(data)
    return JSONResponse(status_code=status_code, content=body)


def error(message: str, status_code: int = 500, errors: Optional[Any] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if errors:
        body["errors"] = jsonable_encoder(errors)
    return JSONResponse(status_code=status_code, content=body)


class Page(BaseModel):
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def paginate(page: Optional[int] = None, limit: Optional[int] = None) -> Page:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else DEFAULT_LIMIT
    return Page(page=page, limit=min(limit, MAX_LIMIT))


def paginated(items: Sequence[Any], page: Page, total: int, message: str = "Success") -> JSONResponse:
    total_pages = math.ceil(total / page.limit) if total else 0
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "message": message,
            "data": serialize(list(items)),
            "pagination": {
                "page": page.page,
                "limit": page.limit,
                "total": total,
                "totalPages": total_pages,
                "hasNext": page.page < total_pages,
                "hasPrev": page.page > 1,
            },
        },
    )
