import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from database import Store, create_document, get_db, get_documents, strip_private
from mailer import notify_new_order
from schemas import Order as OrderSchema, OrderStatusIn, OrderUser, Service as ServiceSchema, ServiceIn
from security import get_admin_user, get_current_user

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
ALLOWED_PROOF_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".pdf"}

router = APIRouter(prefix="/api")


def clean(doc: dict) -> dict:
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


# Service catalog
def grouped_catalog(services: list) -> list:
    groups = {}
    for s in services:
        groups.setdefault(s["platform"], []).append(
            {"id": s["id"], "name": s["name"], "price": s["price"], "active": s.get("active", True)}
        )
    return [{"platform": platform, "services": items} for platform, items in groups.items()]


def get_service_or_404(store: Store, platform: str, name: str) -> dict:
    service = store.find_one("service", {"platform": platform, "name": name})
    if service is None:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


@router.get("/services", tags=["services"])
def list_services(active_only: bool = False, store: Store = Depends(get_db)):
    query = {"active": True} if active_only else None
    return {"services": grouped_catalog(get_documents("service", query, store=store))}


@router.post("/services", status_code=201, tags=["services"])
def add_service(body: ServiceIn, _: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    if store.find_one("service", {"platform": body.platform, "name": body.name}):
        raise HTTPException(status_code=400, detail="Service already exists")
    service_id = create_document("service", ServiceSchema(**body.model_dump()), store=store)
    logger.info(f"Service {body.platform}/{body.name} added")
    return {"success": True, "service_id": service_id, "services": grouped_catalog(store.find("service"))}


@router.delete("/services/{platform}/{name}", tags=["services"])
def delete_service(platform: str, name: str, _: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    if not store.delete_one("service", {"platform": platform, "name": name}):
        raise HTTPException(status_code=404, detail="Service not found")
    logger.info(f"Service {platform}/{name} deleted")
    return {"success": True, "services": grouped_catalog(store.find("service"))}


@router.patch("/services/{platform}/{name}/toggle", tags=["services"])
def toggle_service(platform: str, name: str, _: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    service = get_service_or_404(store, platform, name)
    active = not service.get("active", True)
    store.update_one("service", {"id": service["id"]}, {"active": active})
    return {"success": True, "active": active}


# Orders
def save_proof(upload: UploadFile) -> str:
    """Validate and store a proof-of-payment upload; returns the stored path."""
    ext = Path(upload.filename or "").suffix.lower()
    if ext not in ALLOWED_PROOF_EXTENSIONS:
        allowed = ", ".join(sorted(ALLOWED_PROOF_EXTENSIONS))
        raise HTTPException(status_code=400, detail=f"File type not allowed. Allowed: {allowed}")
    upload.file.seek(0)
    data = upload.file.read(MAX_UPLOAD_BYTES + 1)
    if not data:
        raise HTTPException(status_code=400, detail="Proof file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        max_mb = MAX_UPLOAD_BYTES / (1024 * 1024)
        raise HTTPException(status_code=400, detail=f"File too large. Maximum size: {max_mb:.0f} MB")

    root = Path(UPLOAD_DIR)
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"{uuid.uuid4().hex}{ext}"
    path.write_bytes(data)
    return str(path)


@router.post("/orders", status_code=201, tags=["orders"])
def create_order(
    background_tasks: BackgroundTasks,
    platform: Optional[str] = Form(None),
    service: Optional[str] = Form(None),
    link: Optional[str] = Form(None),
    quantity: Optional[int] = Form(None),
    payment_method: Optional[str] = Form(None),
    proof_url: Optional[str] = Form(None),
    proof: Optional[UploadFile] = File(None),
    current_user: dict = Depends(get_current_user),
    store: Store = Depends(get_db),
):
    has_proof = (proof is not None and proof.filename) or proof_url
    if not all([platform, service, link, quantity, payment_method]) or not has_proof:
        raise HTTPException(status_code=400, detail="Missing fields")
    if quantity <= 0:
        raise HTTPException(status_code=400, detail="Quantity must be positive")

    catalog_entry = get_service_or_404(store, platform, service)
    if not catalog_entry.get("active", True):
        raise HTTPException(status_code=400, detail="Service is not available")

    proof_ref = save_proof(proof) if proof is not None and proof.filename else proof_url
    order = OrderSchema(
        user_id=current_user["id"],
        user=OrderUser(
            id=current_user["id"],
            name=f"{current_user.get('first_name', '')} {current_user.get('last_name', '')}".strip(),
            email=current_user.get("email"),
        ),
        platform=platform,
        service=service,
        link=link,
        quantity=quantity,
        price=round(catalog_entry["price"] * quantity, 2),
        payment_method=payment_method,
        proof=proof_ref,
    )
    order_id = create_document("order", order, store=store)
    saved = clean(store.find_one("order", {"id": order_id}))
    logger.info(f"Order {order_id} placed by {current_user['id']}")

    background_tasks.add_task(notify_new_order, saved)
    return {"success": True, "order": saved}


@router.get("/orders", tags=["orders"])
def list_my_orders(current_user: dict = Depends(get_current_user), store: Store = Depends(get_db)):
    orders = store.find("order", {"user_id": current_user["id"]}, sort=("created_at", -1))
    return {"orders": [clean(o) for o in orders]}


# Admin endpoints
@router.get("/admin/overview", tags=["admin"])
def admin_overview(_: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    return {name: store.count(name) for name in ("user", "contact", "message", "status", "call", "service", "order")}


@router.get("/admin/users", tags=["admin"])
def admin_list_users(_: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    return [strip_private(u) for u in store.find("user")]


@router.get("/admin/orders", tags=["admin"])
def admin_list_orders(status: Optional[str] = None, _: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    query = {"status": status} if status else None
    return {"orders": [clean(o) for o in store.find("order", query, sort=("created_at", -1))]}


@router.post("/admin/orders/{order_id}/status", tags=["admin"])
def admin_update_order_status(order_id: str, body: OrderStatusIn, _: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    if not store.update_one("order", {"id": order_id}, {"status": body.status}):
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info(f"Order {order_id} set to {body.status!r}")
    return {"success": True, "order": clean(store.find_one("order", {"id": order_id}))}


@router.get("/admin/orders/{order_id}/proof", tags=["admin"])
def admin_order_proof(order_id: str, _: dict = Depends(get_admin_user), store: Store = Depends(get_db)):
    order = store.find_one("order", {"id": order_id})
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    proof = order.get("proof") or ""
    path = Path(proof)
    if proof.startswith(("http://", "https://")) or not path.is_file():
        raise HTTPException(status_code=404, detail="No stored proof file for this order")
    return FileResponse(path)
