"""Sort, filter, and pagination policies for the engine's read path.

Strategies are pure functions over lists already fetched from the store.
Keys and fields come from closed tables; an unrecognised key leaves the list
as it was instead of raising, so a bad query parameter degrades to the
unsorted/unfiltered result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from . import log
from .constants import DEFAULT_PAGE_SIZE
from .models import Payment, Transaction

T = TypeVar("T")

# (sort key function, descending)
SortPolicy = Tuple[Callable[[Any], Any], bool]
FieldAccessor = Callable[[Any], Optional[object]]


TRANSACTION_SORTS: Mapping[str, SortPolicy] = {
    "date": (lambda trx: trx.created_at, False),
    "created_at": (lambda trx: trx.created_at, False),
    "date_desc": (lambda trx: trx.created_at, True),
    "total": (lambda trx: trx.total_price, False),
    "total_price": (lambda trx: trx.total_price, False),
    "total_desc": (lambda trx: trx.total_price, True),
    "customer": (lambda trx: trx.customer_name.lower(), False),
    "customer_name": (lambda trx: trx.customer_name.lower(), False),
    "status": (lambda trx: trx.status.value, False),
}

TRANSACTION_FIELDS: Mapping[str, FieldAccessor] = {
    "id": lambda trx: trx.transaction_id,
    "customer": lambda trx: trx.customer_name,
    "customer_name": lambda trx: trx.customer_name,
    "customer_id": lambda trx: trx.customer_id,
    "status": lambda trx: trx.status.value,
    "total": lambda trx: trx.total_price,
    "note": lambda trx: trx.note,
}

PAYMENT_SORTS: Mapping[str, SortPolicy] = {
    "date": (lambda pmt: pmt.created_at, False),
    "date_desc": (lambda pmt: pmt.created_at, True),
    "amount": (lambda pmt: pmt.amount_due, False),
    "amount_desc": (lambda pmt: pmt.amount_due, True),
    "status": (lambda pmt: pmt.status.value, False),
}

PAYMENT_FIELDS: Mapping[str, FieldAccessor] = {
    "id": lambda pmt: pmt.payment_id,
    "transaction": lambda pmt: pmt.transaction_id,
    "status": lambda pmt: pmt.status.value,
    "method": lambda pmt: pmt.method.value,
}


def sort_entities(entities: Sequence[T], key: Optional[str], policies: Mapping[str, SortPolicy]) -> List[T]:
    """Return ``entities`` ordered by the policy registered under ``key``.

    Sorting is stable. ``None`` or an unknown key returns a copy in the
    original order.
    """

    if not key:
        return list(entities)
    policy = policies.get(key.strip().lower())
    if policy is None:
        log.debug("Ignoring unknown sort key '%s'", key)
        return list(entities)
    key_func, descending = policy
    return sorted(entities, key=key_func, reverse=descending)


def filter_entities(
    entities: Sequence[T],
    field: Optional[str],
    keyword: Optional[str],
    accessors: Mapping[str, FieldAccessor],
) -> List[T]:
    """Keep entities whose ``field`` contains ``keyword``, ignoring case.

    The field value is stringified before matching; a missing value never
    matches. A missing field/keyword or an unknown field returns a copy of the
    input.
    """

    if not field or keyword is None:
        return list(entities)
    accessor = accessors.get(field.strip().lower())
    if accessor is None:
        log.debug("Ignoring unknown filter field '%s'", field)
        return list(entities)

    needle = keyword.lower()
    kept: List[T] = []
    for entity in entities:
        value = accessor(entity)
        if value is not None and needle in str(value).lower():
            kept.append(entity)
    return kept


def sort_transactions(transactions: Sequence[Transaction], key: Optional[str]) -> List[Transaction]:
    return sort_entities(transactions, key, TRANSACTION_SORTS)


def filter_transactions(transactions: Sequence[Transaction], field: Optional[str], keyword: Optional[str]) -> List[Transaction]:
    return filter_entities(transactions, field, keyword, TRANSACTION_FIELDS)


def sort_payments(payments: Sequence[Payment], key: Optional[str]) -> List[Payment]:
    return sort_entities(payments, key, PAYMENT_SORTS)


def filter_payments(payments: Sequence[Payment], field: Optional[str], keyword: Optional[str]) -> List[Payment]:
    return filter_entities(payments, field, keyword, PAYMENT_FIELDS)


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a query result."""

    items: Tuple[T, ...]
    total_count: int
    page: int
    limit: int
    total_pages: int


def paginate(items: Sequence[T], page: Optional[int] = None, limit: Optional[int] = None) -> Page[T]:
    """Slice ``items`` into the requested 1-based page.

    Raises:
        ValueError: If ``page`` or ``limit`` is smaller than one.
    """

    page = 1 if page is None else page
    limit = DEFAULT_PAGE_SIZE if limit is None else limit
    if page < 1 or limit < 1:
        raise ValueError("page and limit must be at least 1")

    total_count = len(items)
    offset = (page - 1) * limit
    return Page(
        items=tuple(items[offset:offset + limit]),
        total_count=total_count,
        page=page,
        limit=limit,
        total_pages=(total_count + limit - 1) // limit,
    )


@dataclass(frozen=True)
class Selection:
    """Read-path query: sort, then filter, then paginate."""

    sort: Optional[str] = None
    filter_field: Optional[str] = None
    keyword: Optional[str] = None
    page: Optional[int] = None
    limit: Optional[int] = None


def apply_selection(
    entities: Sequence[T],
    selection: Selection,
    *,
    sorts: Mapping[str, SortPolicy],
    fields: Mapping[str, FieldAccessor],
    default_limit: Optional[int] = None,
) -> Page[T]:
    """Run ``selection`` over ``entities`` in the fixed sort/filter/page order."""

    ordered = sort_entities(entities, selection.sort, sorts)
    matched = filter_entities(ordered, selection.filter_field, selection.keyword, fields)
    limit = selection.limit if selection.limit is not None else default_limit
    return paginate(matched, selection.page, limit)


__all__ = [
    "TRANSACTION_SORTS",
    "TRANSACTION_FIELDS",
    "PAYMENT_SORTS",
    "PAYMENT_FIELDS",
    "sort_entities",
    "filter_entities",
    "sort_transactions",
    "filter_transactions",
    "sort_payments",
    "filter_payments",
    "Page",
    "paginate",
    "Selection",
    "apply_selection",
]
