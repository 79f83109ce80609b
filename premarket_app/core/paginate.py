import math
from typing import Iterable, Type, TypeVar

from pydantic import BaseModel

from premarket_app.schemas.schema import DEFAULT_LIMIT, MAX_LIMIT, PaginatedOut

T = TypeVar("T", bound=BaseModel)


class PaginatePage:
    @staticmethod
    def normalize(page: int | None, limit: int | None) -> tuple[int, int]:
        page = max(page or 1, 1)
        limit = max(1, min(limit or DEFAULT_LIMIT, MAX_LIMIT))
        return page, limit

    @staticmethod
    def offset(page: int, limit: int) -> int:
        return (page - 1) * limit

    @staticmethod
    def build(items: list, page: int, limit: int, total: int) -> PaginatedOut:
        return PaginatedOut(
            items=items,
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        )


class ORMMapper:
    @staticmethod
    def one(item, schema: Type[T]) -> T:
        return schema.model_validate(item)

    @staticmethod
    def many(items: Iterable, schema: Type[T]) -> list[T]:
        return [schema.model_validate(item) for item in items]
