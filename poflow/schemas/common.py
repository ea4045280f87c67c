"""List envelopes shared by collection endpoints."""

from typing import Generic, List, TypeVar

from pydantic import BaseModel, Field

ItemT = TypeVar("ItemT")


class PageInfo(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class Page(BaseModel, Generic[ItemT]):
    data: List[ItemT] = Field(default_factory=list)
    pagination: PageInfo


def page_offset(page: int, limit: int) -> int:
    return (page - 1) * limit


def page_info(page: int, limit: int, total: int) -> PageInfo:
    # An empty listing still reports one (empty) page
    total_pages = max(1, -(-total // limit))
    return PageInfo(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )
