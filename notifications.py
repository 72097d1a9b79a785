"""
Notifications for admins (no owner) and for individual users.
"""

import logging
from typing import Optional, List

from pymongo import ReturnDocument

import database
from database import create_document, get_documents, get_document_by_id, to_object_id, serialize_doc, utcnow
from errors import NotFound
from schemas import Notification

logger = logging.getLogger(__name__)

FEED_LIMIT = 50


def notify(message: str, user: Optional[str] = None, link: Optional[str] = None, metadata: Optional[dict] = None, type: str = "order") -> dict:
    note = Notification(type=type, message=message, user=user, link=link, metadata=metadata or {})
    note_id = create_document("notification", note)
    logger.debug("Notification %s for %s: %s", note_id, user or "admin", message)
    return get_document_by_id("notification", note_id)


def _owner_filter(user_id: Optional[str]) -> dict:
    # Admin notifications are the ones without an owner
    return {"user": user_id}


def list_notifications(user_id: Optional[str] = None) -> List[dict]:
    return get_documents("notification", _owner_filter(user_id), limit=FEED_LIMIT, sort=[("created_at", -1)])


def mark_read(notification_id: str, user_id: Optional[str] = None) -> dict:
    oid = to_object_id(notification_id)
    doc = None
    if oid is not None:
        doc = database.collection("notification").find_one_and_update(
            {"_id": oid, **_owner_filter(user_id)},
            {"$set": {"read": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    if doc is None:
        raise NotFound("Notification not found")
    return serialize_doc(doc)


def delete_notification(notification_id: str, user_id: Optional[str] = None):
    oid = to_object_id(notification_id)
    doc = None
    if oid is not None:
        doc = database.collection("notification").find_one_and_delete({"_id": oid, **_owner_filter(user_id)})
    if doc is None:
        raise NotFound("Notification not found")
