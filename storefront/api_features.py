"""Query-feature pipeline shared by every list endpoint.

Client query parameters are untrusted. They are parsed against a per-collection
field map into a frozen :class:`QueryDescriptor`; each stage of
:class:`ApiFeatures` returns a new builder instead of mutating a shared query,
so stages can be chained in any order.

    features = (
        ApiFeatures(db.products, params, PRODUCT_FIELDS)
        .pagination()
        .fields()
        .filtration()
        .search(["title", "description"])
        .sort()
    )
    features = await features.count_documents()
    docs = await features.to_list()
    meta = features.get_pagination_metadata()
"""

import math
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from starlette.datastructures import QueryParams

from storefront.shared.utils import (
    PaginatedResponse,
    PaginationMetadata,
    ValidationException,
    serialize_doc,
    settings,
)

ParamValue = Union[str, List[str]]

RESERVED_PARAMS = frozenset({"page", "sort", "fields", "keyword", "limit"})

# The only bracket tokens ever turned into driver operators.
COMPARISON_OPERATORS = {"gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte"}

FILTER_KEY = re.compile(r"^(?P<field>[A-Za-z_][A-Za-z0-9_]*)(?:\[(?P<op>[^\[\]]*)\])?$")
FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_SORT = [("created_at", -1)]

# Keeps skip well inside the driver's int64 range
MAX_PAGE = 1_000_000


def query_params_to_dict(query_params: QueryParams) -> Dict[str, ParamValue]:
    """Flatten Starlette query params; repeated keys become lists."""
    params: Dict[str, ParamValue] = {}
    for key in query_params.keys():
        values = query_params.getlist(key)
        params[key] = values if len(values) > 1 else values[0]
    return params


def _scalar(value: Optional[ParamValue]) -> Optional[str]:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _to_int(value: Optional[ParamValue], default: int) -> int:
    try:
        number = int(_scalar(value))
    except (TypeError, ValueError):
        return default
    return number


def coerce_value(field: str, raw: str, field_type: type) -> Any:
    """Convert a query-string value to the declared field type or raise a 400."""
    try:
        if field_type is bool:
            lowered = raw.strip().lower()
            if lowered in ("true", "1"):
                return True
            if lowered in ("false", "0"):
                return False
            raise ValueError(raw)
        if field_type is float:
            number = float(raw)
            if not math.isfinite(number):
                raise ValueError(raw)
            return number
        if field_type is int:
            return int(raw)
        if field_type is datetime:
            return datetime.fromisoformat(raw)
        if field_type is ObjectId:
            return ObjectId(raw)
        return str(raw)
    except (ValueError, InvalidId, TypeError):
        raise ValidationException(f"Invalid value for {field}: {raw!r}")


class QueryDescriptor(BaseModel):
    filters: Dict[str, Dict[str, Any]] = {}
    search: Optional[List[Dict[str, Any]]] = None
    base_filter: Dict[str, Any] = {}
    sort: List[Tuple[str, int]] = DEFAULT_SORT
    projection: Optional[Dict[str, int]] = None
    page: int = 1
    limit: int = 0
    skip: int = 0
    paginated: bool = False
    total_documents: Optional[int] = None

    class Config:
        frozen = True

    @property
    def query_filter(self) -> Dict[str, Any]:
        query: Dict[str, Any] = dict(self.filters)
        query.update(self.base_filter)
        if self.search:
            query["$or"] = self.search
        return query


class ApiFeatures:
    def __init__(
        self,
        collection,
        params: Mapping[str, ParamValue],
        field_map: Mapping[str, type],
        base_filter: Optional[Dict[str, Any]] = None,
        descriptor: Optional[QueryDescriptor] = None,
    ):
        self.collection = collection
        self.params = dict(params)
        self.field_map = field_map
        if descriptor is None:
            descriptor = QueryDescriptor(base_filter=base_filter or {})
        self.descriptor = descriptor

    def _with(self, **changes) -> "ApiFeatures":
        return ApiFeatures(
            self.collection,
            self.params,
            self.field_map,
            descriptor=self.descriptor.model_copy(update=changes),
        )

    def _check_field(self, name: str) -> str:
        if not FIELD_NAME.match(name) or name not in self.field_map:
            raise ValidationException(f"Unknown field: {name}")
        return name

    def _page_and_limit(self, default_limit: Optional[int]) -> Tuple[int, int]:
        default_limit = default_limit or settings.DEFAULT_PAGE_LIMIT
        limit = _to_int(self.params.get("limit"), default_limit)
        if limit < 1:
            limit = default_limit
        limit = min(limit, settings.MAX_PAGE_LIMIT)
        page = max(_to_int(self.params.get("page"), 1), 1)
        if page > MAX_PAGE:
            raise ValidationException(f"page must not exceed {MAX_PAGE}")
        return page, limit

    # 1. Pagination
    def pagination(self, default_limit: Optional[int] = None) -> "ApiFeatures":
        page, limit = self._page_and_limit(default_limit)
        return self._with(page=page, limit=limit, skip=(page - 1) * limit, paginated=True)

    # 2. Filtration
    def filtration(self) -> "ApiFeatures":
        filters: Dict[str, Dict[str, Any]] = {}
        for key, raw in self.params.items():
            if key in RESERVED_PARAMS:
                continue
            match = FILTER_KEY.match(key)
            if not match:
                raise ValidationException(f"Invalid filter parameter: {key}")
            field, op = match.group("field"), match.group("op")
            field_type = self.field_map.get(field)
            if field_type is None:
                raise ValidationException(f"Unknown filter field: {field}")

            values = raw if isinstance(raw, list) else [raw]
            condition = filters.setdefault(field, {})
            if op is not None:
                if op not in COMPARISON_OPERATORS:
                    raise ValidationException(f"Unsupported filter operator: {op}")
                if len(values) != 1:
                    raise ValidationException(f"Filter {key} accepts a single value")
                condition[COMPARISON_OPERATORS[op]] = coerce_value(field, values[0], field_type)
            elif len(values) == 1:
                condition["$eq"] = coerce_value(field, values[0], field_type)
            else:
                condition["$in"] = [coerce_value(field, v, field_type) for v in values]
        return self._with(filters=filters)

    # 3. Sort
    def sort(self) -> "ApiFeatures":
        raw = _scalar(self.params.get("sort"))
        sort_spec: List[Tuple[str, int]] = []
        if raw:
            for part in raw.split(","):
                part = part.strip()
                if not part:
                    continue
                direction = -1 if part.startswith("-") else 1
                sort_spec.append((self._check_field(part[1:] if direction == -1 else part), direction))
        if not sort_spec:
            sort_spec = list(DEFAULT_SORT)
        # Stable windows across pages when the sort keys tie
        sort_spec.append(("_id", sort_spec[0][1]))
        return self._with(sort=sort_spec)

    # 4. Search
    def search(self, search_fields: Optional[List[str]] = None) -> "ApiFeatures":
        keyword = _scalar(self.params.get("keyword"))
        if not keyword or not keyword.strip() or not search_fields:
            return self
        pattern = re.escape(keyword.strip())
        clauses = [{field: {"$regex": pattern, "$options": "i"}} for field in search_fields]
        return self._with(search=clauses)

    # 5. Fields
    def fields(self) -> "ApiFeatures":
        raw = _scalar(self.params.get("fields"))
        if not raw:
            return self
        names = [name.strip() for name in raw.split(",") if name.strip()]
        if not names:
            return self
        return self._with(projection={self._check_field(name): 1 for name in names})

    # 6. Count total documents (filters and search, no pagination window)
    async def count_documents(self) -> "ApiFeatures":
        total = await self.collection.count_documents(self.descriptor.query_filter)
        return self._with(total_documents=total)

    # 7. Pagination metadata
    def get_pagination_metadata(self, default_limit: Optional[int] = None) -> PaginationMetadata:
        if self.descriptor.total_documents is None:
            raise RuntimeError("count_documents() must run before reading pagination metadata")
        if self.descriptor.paginated:
            page, limit = self.descriptor.page, self.descriptor.limit
        else:
            page, limit = self._page_and_limit(default_limit)
        total = self.descriptor.total_documents
        return PaginationMetadata(
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
            total_documents=total,
        )

    async def to_list(self) -> List[dict]:
        d = self.descriptor
        cursor = self.collection.find(d.query_filter, d.projection).sort(d.sort)
        if d.paginated:
            cursor = cursor.skip(d.skip).limit(d.limit)
            return await cursor.to_list(length=d.limit)
        return await cursor.to_list(length=None)

    async def paginate(self) -> PaginatedResponse:
        """Count, fetch and wrap one page in the list envelope."""
        counted = await self.count_documents()
        docs = await counted.to_list()
        return PaginatedResponse(
            data=[serialize_doc(doc) for doc in docs],
            pagination=counted.get_pagination_metadata(),
        )
