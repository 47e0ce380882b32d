from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from .exceptions import ProductNotFound, ProductUnavailable
from .models import Product


@dataclass(frozen=True)
class ProductQuote:
    id: int
    name: str
    price: Decimal
    is_available: bool


def lookup_products(product_ids: Iterable[int]) -> dict[int, ProductQuote]:
    """Return the current catalog price and availability for each known id."""
    ids = set(product_ids)
    rows = Product.objects.filter(id__in=ids).values_list("id", "name", "price", "is_available")
    return {
        pk: ProductQuote(id=pk, name=name, price=price, is_available=is_available)
        for pk, name, price, is_available in rows
    }


def quote_products(product_ids: Iterable[int]) -> dict[int, ProductQuote]:
    """Like ``lookup_products`` but every id must exist and be orderable."""
    ids = set(product_ids)
    quotes = lookup_products(ids)

    missing = sorted(ids - quotes.keys())
    if missing:
        raise ProductNotFound(f"Products not found: {', '.join(str(pk) for pk in missing)}")

    unavailable = sorted(quote.name for quote in quotes.values() if not quote.is_available)
    if unavailable:
        raise ProductUnavailable(f"Currently unavailable: {', '.join(unavailable)}")
    return quotes
