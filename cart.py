"""
Cart embedded on the user document.
"""

from typing import Optional, List

from database import get_document_by_id, update_document
from errors import NotFound
from schemas import CartLine


def _lines(user_id: str) -> List[dict]:
    owner = get_document_by_id("user", user_id, {"cart": 1})
    if owner is None:
        raise NotFound("User not found")
    return owner.get("cart") or []


def _save(user_id: str, lines: List[dict]) -> List[dict]:
    update_document("user", user_id, {"cart": lines})
    return get_cart(user_id)


def _same_line(line: dict, product_id: str, size: Optional[str]) -> bool:
    return line["product"] == product_id and line.get("size") == size


def _matches(line: dict, product_id: str, size: Optional[str]) -> bool:
    """No size given means every size of the product."""
    return line["product"] == product_id and (size is None or line.get("size") == size)


def get_cart(user_id: str) -> List[dict]:
    """Cart lines with their product documents filled in (None when deleted)."""
    return [
        {**line, "product": get_document_by_id("product", line["product"]), "product_id": line["product"]}
        for line in _lines(user_id)
    ]


def add_to_cart(user_id: str, product_id: str, quantity: int = 1, size: Optional[str] = None) -> List[dict]:
    product = get_document_by_id("product", product_id)
    if not product or product.get("status") != "active":
        raise NotFound("Product not found")

    lines = _lines(user_id)
    for line in lines:
        if _same_line(line, product["_id"], size):
            line["quantity"] += quantity
            break
    else:
        lines.append(CartLine(product=product["_id"], quantity=quantity, size=size).model_dump())
    return _save(user_id, lines)


def update_cart_line(user_id: str, product_id: str, quantity: int, size: Optional[str] = None) -> List[dict]:
    lines = _lines(user_id)
    matched = [line for line in lines if _matches(line, product_id, size)]
    if not matched:
        raise NotFound("Item not in cart")
    for line in matched:
        line["quantity"] = quantity
    return _save(user_id, lines)


def remove_from_cart(user_id: str, product_id: str, size: Optional[str] = None) -> List[dict]:
    lines = _lines(user_id)
    kept = [line for line in lines if not _matches(line, product_id, size)]
    if len(kept) == len(lines):
        raise NotFound("Item not in cart")
    return _save(user_id, kept)


def clear_cart(user_id: str):
    update_document("user", user_id, {"cart": []})
