import os
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from database import Store, get_db, strip_private
from realtime import ConnectionManager, contact_ids_of, get_connection_manager
from schemas import (
    Call as CallSchema,
    CallIn,
    Contact as ContactSchema,
    ContactIn,
    ContactOut,
    Message as MessageSchema,
    MessageIn,
    ProfileUpdate,
    PublicProfile,
    Status as StatusSchema,
    StatusIn,
)
from security import check_password_length, get_current_user, get_password_hash, require_self
from utils import format_last_seen, next_sequence, now_ms

STATUS_TTL_HOURS = float(os.getenv("STATUS_TTL_HOURS", 24))

router = APIRouter(prefix="/api/user", tags=["chat"])


def get_user_or_404(store: Store, user_id: str) -> dict:
    user = store.find_one("user", {"id": user_id})
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def get_pair_or_404(store: Store, user_id: str, contact_id: str) -> tuple:
    user = store.find_one("user", {"id": user_id})
    contact = store.find_one("user", {"id": contact_id})
    if user is None or contact is None:
        raise HTTPException(status_code=404, detail="User or contact not found")
    return user, contact


def public_profile(user: dict) -> dict:
    profile = PublicProfile(**strip_private(user)).model_dump()
    last_seen = profile["settings"]["last_seen"]
    profile["last_seen_text"] = "online" if profile["settings"]["online"] else format_last_seen(last_seen)
    return profile


def clean(doc: dict) -> dict:
    doc = dict(doc)
    doc.pop("_id", None)
    doc.pop("created_at", None)
    return doc


# Profiles
@router.get("/{user_id}", response_model=PublicProfile)
def read_profile(user_id: str, store: Store = Depends(get_db)):
    return public_profile(get_user_or_404(store, user_id))


@router.put("/{user_id}")
def update_profile(user_id: str, body: ProfileUpdate, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    user = get_user_or_404(store, user_id)
    require_self(user_id, current_user)

    changes = {k: v for k, v in body.model_dump(exclude={"password", "theme"}).items() if v}
    if "email" in changes:
        changes["email"] = str(changes["email"]).lower()
        other = store.find_one("user", {"email": changes["email"]})
        if other and other["id"] != user_id:
            raise HTTPException(status_code=400, detail="Email already registered")
    if body.password:
        check_password_length(body.password)
        changes["hashed_password"] = get_password_hash(body.password)
    if body.theme:
        settings = dict(user.get("settings") or {})
        settings["theme"] = body.theme
        changes["settings"] = settings

    if changes:
        store.update_one("user", {"id": user_id}, changes)
    return {"message": "Profile updated successfully"}


# Contacts
@router.post("/{user_id}/contacts")
def add_contact(user_id: str, body: ContactIn, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_pair_or_404(store, user_id, body.contactId)
    require_self(user_id, current_user)
    if user_id == body.contactId:
        raise HTTPException(status_code=400, detail="Cannot add yourself as a contact")
    if store.find_one("contact", {"owner_id": user_id, "contact_id": body.contactId}):
        raise HTTPException(status_code=400, detail="Contact already exists")

    store.insert("contact", ContactSchema(owner_id=user_id, contact_id=body.contactId, added_at=now_ms()).model_dump())
    return {"message": "Contact added successfully"}


@router.get("/{user_id}/contacts", response_model=List[ContactOut])
def list_contacts(user_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_user_or_404(store, user_id)
    require_self(user_id, current_user)
    contacts = []
    for contact_id in contact_ids_of(store, user_id):
        contact = store.find_one("user", {"id": contact_id})
        if contact is not None:
            contacts.append(ContactOut(**strip_private(contact)))
    return contacts


# Chats
def conversation(store: Store, user_id: str, contact_id: str) -> List[dict]:
    sent = store.find("message", {"sender": user_id, "recipient": contact_id})
    received = store.find("message", {"sender": contact_id, "recipient": user_id}) if contact_id != user_id else []
    messages = sorted(sent + received, key=lambda m: (m["timestamp"], m.get("seq", 0)))
    return [clean(m) for m in messages]


@router.get("/{user_id}/chats/{contact_id}")
def read_chat(user_id: str, contact_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_pair_or_404(store, user_id, contact_id)
    require_self(user_id, current_user)
    return conversation(store, user_id, contact_id)


@router.post("/{user_id}/chats/{contact_id}")
def send_message(
    user_id: str,
    contact_id: str,
    body: MessageIn,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    store: Store = Depends(get_db),
    connections: ConnectionManager = Depends(get_connection_manager),
):
    get_pair_or_404(store, user_id, contact_id)
    require_self(user_id, current_user)
    text = (body.message or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    message = MessageSchema(sender=user_id, recipient=contact_id, message=text, timestamp=now_ms(), seq=next_sequence())
    message_id = store.insert("message", message.model_dump())
    payload = {"id": message_id, **message.model_dump()}
    background_tasks.add_task(connections.send_to, contact_id, "newMessage", {"from": user_id, "message": payload})
    return {"message": "Message sent successfully", "timestamp": message.timestamp}


@router.put("/{user_id}/chats/{contact_id}/read")
def mark_read(user_id: str, contact_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_pair_or_404(store, user_id, contact_id)
    require_self(user_id, current_user)
    updated = store.update_many("message", {"sender": contact_id, "recipient": user_id, "read": False}, {"read": True})
    return {"message": "Messages marked as read", "updated": updated}


# Statuses
def is_live(status_doc: dict, now: int) -> bool:
    if STATUS_TTL_HOURS <= 0:
        return True
    return now - status_doc["timestamp"] < STATUS_TTL_HOURS * 3600 * 1000


@router.post("/{user_id}/status")
def add_status(
    user_id: str,
    body: StatusIn,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    store: Store = Depends(get_db),
    connections: ConnectionManager = Depends(get_connection_manager),
):
    get_user_or_404(store, user_id)
    require_self(user_id, current_user)
    if not body.media:
        raise HTTPException(status_code=400, detail="Media is required")

    status_doc = StatusSchema(user_id=user_id, media=body.media, caption=body.caption or "", type=body.type or "image", timestamp=now_ms())
    status_id = store.insert("status", status_doc.model_dump())
    payload = {"id": status_id, **status_doc.model_dump()}
    background_tasks.add_task(connections.send_to_many, contact_ids_of(store, user_id), "newStatus", {"userId": user_id, "status": payload})
    return {"message": "Status added successfully", "status": payload}


@router.get("/{user_id}/status")
def list_statuses(user_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_user_or_404(store, user_id)
    require_self(user_id, current_user)
    now = now_ms()
    statuses = store.find("status", {"user_id": user_id}, sort=("timestamp", 1))
    return [clean(s) for s in statuses if is_live(s, now)]


# Calls
@router.post("/{user_id}/calls")
def add_call(user_id: str, body: CallIn, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_pair_or_404(store, user_id, body.contactId)
    require_self(user_id, current_user)
    call = CallSchema(user_id=user_id, contact_id=body.contactId, type=body.type, direction=body.direction, missed=body.missed, timestamp=now_ms())
    call_id = store.insert("call", call.model_dump())
    return {"message": "Call recorded successfully", "call": {"id": call_id, **call.model_dump()}}


@router.get("/{user_id}/calls")
def list_calls(user_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    get_user_or_404(store, user_id)
    require_self(user_id, current_user)
    return [clean(c) for c in store.find("call", {"user_id": user_id}, sort=("timestamp", -1))]
