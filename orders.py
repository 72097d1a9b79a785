"""
Order workflow

Turns a cart (or a "buy now" item list) into an order with a linked payment,
reserving stock with conditional decrements, and handles cancellation and
admin status changes.
"""

import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import config
import database
from auth import is_admin
from database import (
    create_document,
    delete_document,
    get_documents,
    get_document_by_id,
    release_stock,
    reserve_stock,
    serialize_doc,
    to_object_id,
    update_document,
    utcnow,
)
from errors import EmptyCart, Forbidden, InsufficientStock, InvalidState, NotFound, ValidationFailed
from notifications import notify
from schemas import Order, OrderItem, Payment, ShippingAddress

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "processing"},
    "confirmed": {"processing", "shipped"},
    "processing": {"shipped", "delivered"},
    "shipped": {"delivered"},
    "delivered": set(),
}

STATUS_MESSAGES = {
    "processing": "Your order is being processed",
    "delivered": "Your order has been delivered",
}


def _money(amount: float) -> str:
    return f"{amount:.0f}" if float(amount).is_integer() else f"{amount:.2f}"


def shipping_fee_for(subtotal: float) -> float:
    return 0 if subtotal > config.FREE_SHIPPING_THRESHOLD else config.SHIPPING_FEE


def new_order_number() -> str:
    return f"ORD-{str(ObjectId())[-6:].upper()}"


# ===================== Placement =====================

def _snapshot_lines(lines: List[dict], direct: bool) -> List[OrderItem]:
    """Freeze product data for each requested line.

    Cart lines pointing at missing or inactive products are dropped; a direct
    order naming one is rejected.
    """
    snapshots = []
    for line in lines:
        product = get_document_by_id("product", line["product"])
        if not product or product.get("status") != "active":
            if direct:
                raise NotFound(f"Product {line.get('name') or line['product']} not found", status_code=400)
            logger.info("Skipping unavailable product %s in cart", line["product"])
            continue

        quantity = int(line.get("quantity") or 1)
        if (product.get("stock") or 0) < quantity:
            raise InsufficientStock(f"Insufficient stock for {product['name']}")

        snapshots.append(OrderItem(
            product=product["_id"],
            name=product["name"],
            price=product["price"],
            quantity=quantity,
            image=product.get("image"),
            size=line.get("size"),
        ))
    return snapshots


def _release_all(items: List[OrderItem]):
    for item in items:
        if not release_stock(item.product, item.quantity):
            logger.warning("Could not return %d units to missing product %s", item.quantity, item.product)


def _reserve_all(items: List[OrderItem]):
    """Reserve every line or none of them."""
    reserved = []
    for item in items:
        if reserve_stock(item.product, item.quantity) is None:
            if reserved:
                logger.warning("Reservation for %s failed, returning %d earlier lines", item.product, len(reserved))
                _release_all(reserved)
            raise InsufficientStock(f"Insufficient stock for {item.name}")
        reserved.append(item)


def place_order(user: dict, shipping_address: dict, payment_method: str, items: Optional[List[dict]] = None) -> dict:
    direct = bool(items)
    if direct:
        lines = items
    else:
        owner = get_document_by_id("user", user["_id"], {"cart": 1})
        lines = (owner or {}).get("cart") or []
        if not lines:
            raise EmptyCart()

    snapshots = _snapshot_lines(lines, direct)
    if not snapshots:
        raise EmptyCart("No available products in cart")

    _reserve_all(snapshots)

    subtotal = round(sum(item.price * item.quantity for item in snapshots), 2)
    shipping_fee = shipping_fee_for(subtotal)
    total = round(subtotal + shipping_fee, 2)

    order = Order(
        user=user["_id"],
        order_number=new_order_number(),
        items=snapshots,
        shipping_address=ShippingAddress(**shipping_address),
        payment_method=payment_method,
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        total=total,
        payment_status="pending",
        order_status="confirmed" if payment_method == "cod" else "pending",
    )
    try:
        order_id = create_document("order", order)
        payment_id = create_document("payment", Payment(order=order_id, user=user["_id"], method=payment_method, amount=total))
        update_document("order", order_id, {"payment": payment_id})
    except PyMongoError:
        logger.exception("Persisting order for %s failed, returning reserved stock", user["email"])
        _release_all(snapshots)
        raise

    if not direct:
        update_document("user", user["_id"], {"cart": []})

    notify(
        f"New order #{order_id[-6:]} from {user['name']} - Rs. {_money(total)} ({payment_method.upper()})",
        link="/admin",
        metadata={"orderId": order_id, "userId": user["_id"]},
    )
    logger.info("Order %s placed by %s: %d lines, total %s", order.order_number, user["email"], len(snapshots), total)

    return {
        "order": get_document_by_id("order", order_id),
        "payment": get_document_by_id("payment", payment_id),
    }


# ===================== Cancellation =====================

def cancel_order(requester: dict, order_id: str):
    order = get_document_by_id("order", order_id)
    if not order:
        raise NotFound("Order not found")

    admin = is_admin(requester)
    if order["user"] != requester["_id"] and not admin:
        raise Forbidden()
    if not admin and order["order_status"] != "pending":
        raise InvalidState("Only pending orders can be cancelled")

    # Removing the order first means only one caller ever restores its stock
    query = {"_id": to_object_id(order["_id"])}
    if not admin:
        query["order_status"] = "pending"
    removed = database.collection("order").find_one_and_delete(query)
    if removed is None:
        if get_document_by_id("order", order_id):
            raise InvalidState("Only pending orders can be cancelled")
        raise NotFound("Order not found")

    _release_all([OrderItem(**item) for item in removed.get("items", [])])
    if removed.get("payment"):
        delete_document("payment", removed["payment"])
    logger.info("Order %s cancelled by %s", order.get("order_number"), requester["email"])


# ===================== Admin status =====================

def _stamp(moment) -> str:
    local = moment.astimezone()
    return f"{local:%B} {local.day}, {local.year}, {local:%A}, {local:%I:%M:%S %p}"


def update_order_status(order_id: str, new_status: str) -> dict:
    if new_status not in ALLOWED_TRANSITIONS:
        raise ValidationFailed(f"Invalid order status '{new_status}'")

    order = get_document_by_id("order", order_id)
    if not order:
        raise NotFound("Order not found")

    old_status = order["order_status"]
    if new_status == old_status:
        return order
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise InvalidState(f"Cannot change order status from '{old_status}' to '{new_status}'")

    updated = database.collection("order").find_one_and_update(
        {"_id": to_object_id(order_id), "order_status": old_status},
        {"$set": {"order_status": new_status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidState("Order status changed meanwhile, reload and try again")
    updated = serialize_doc(updated)
    logger.info("Order %s moved %s -> %s", updated["order_number"], old_status, new_status)

    if new_status in STATUS_MESSAGES and updated.get("user"):
        notify(
            f"{STATUS_MESSAGES[new_status]}. Order #{updated['order_number']} - {_stamp(utcnow())}",
            user=updated["user"],
            link=f"/orders/{updated['_id']}",
            metadata={
                "orderId": updated["_id"],
                "orderNumber": updated["order_number"],
                "oldStatus": old_status,
                "newStatus": new_status,
            },
        )
    return updated


# ===================== Reads =====================

def _with_payment(order: dict) -> dict:
    if order.get("payment"):
        order["payment"] = get_document_by_id("payment", order["payment"]) or order["payment"]
    return order


def list_user_orders(user_id: str) -> List[dict]:
    orders = get_documents("order", {"user": user_id}, sort=[("created_at", -1)])
    return [_with_payment(order) for order in orders]


def list_all_orders() -> List[dict]:
    orders = get_documents("order", sort=[("created_at", -1)])
    for order in orders:
        _with_payment(order)
        order["customer"] = get_document_by_id("user", order["user"], {"name": 1, "email": 1, "phone": 1})
    return orders


def get_order(requester: dict, order_id: str) -> dict:
    order = get_document_by_id("order", order_id)
    if not order:
        raise NotFound("Order not found")
    if order["user"] != requester["_id"] and not is_admin(requester):
        raise Forbidden()
    order["customer"] = get_document_by_id("user", order["user"], {"name": 1, "email": 1})
    return _with_payment(order)


def get_payment(requester: dict, payment_id: str) -> dict:
    payment = get_document_by_id("payment", payment_id)
    if not payment:
        raise NotFound("Payment not found")
    if payment["user"] != requester["_id"] and not is_admin(requester):
        raise Forbidden()
    return payment
