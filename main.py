import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

import chat
import panel
import realtime
from database import DuplicateError, Store, get_db, strip_private
from schemas import LoginPayload, SignupPayload, Token, User as UserSchema
from security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    SESSION_COOKIE_NAME,
    check_password_length,
    create_access_token,
    get_current_user,
    get_optional_user,
    get_password_hash,
    is_admin,
    verify_password,
)
from utils import default_avatar, generate_hexa_id, is_hexa_id, now_ms

logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Hexachats API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)
app.include_router(panel.router)
app.include_router(realtime.router)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Utilities
def find_user_by_login(store: Store, identifier: str):
    """Resolve a Hexachats ID, username or email to a user document."""
    identifier = identifier.strip()
    if identifier.upper().startswith("HX-"):
        if not is_hexa_id(identifier):
            raise HTTPException(status_code=400, detail="Invalid Hexachats ID format")
        return store.find_one("user", {"id": identifier})
    if "@" in identifier:
        return store.find_one("user", {"email": identifier.lower()})
    return store.find_one("user", {"username": identifier})


DUPLICATE_MESSAGES = {
    "username": "Username already exists",
    "email": "Email already registered",
}


def session_user(user: dict) -> dict:
    user = strip_private(user)
    user["is_admin"] = is_admin(user)
    return user


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        samesite="lax",
        path="/",
    )


def mark_online(store: Store, user: dict, online: bool) -> None:
    settings = dict(user.get("settings") or {})
    settings.update({"online": online, "last_seen": now_ms()})
    store.update_one("user", {"id": user["id"]}, {"settings": settings})


# Public endpoints
@app.get("/", tags=["meta"])
def read_root():
    return {"message": "Hexachats API running"}


@app.get("/health", tags=["meta"])
def health(store: Store = Depends(get_db)):
    response = {
        "backend": "running",
        "store": store.name,
        "collections": [],
        "connections": realtime.manager.total_connections,
    }
    try:
        response["collections"] = store.collection_names()
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Store health check failed", exc_info=True)
        response["connection_status"] = f"Error: {str(e)[:80]}"
    return response


# Authentication
@app.post("/api/signup", status_code=201, tags=["auth"])
def signup(payload: SignupPayload, store: Store = Depends(get_db)):
    check_password_length(payload.password)
    email = payload.email.lower() if payload.email else None
    if payload.username and store.find_one("user", {"username": payload.username}):
        raise HTTPException(status_code=400, detail="Username already exists")
    if email and store.find_one("user", {"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")

    user_doc = UserSchema(
        id=generate_hexa_id(),
        first_name=payload.first_name,
        last_name=payload.last_name,
        username=payload.username,
        email=email,
        hashed_password=get_password_hash(payload.password),
        avatar=default_avatar(payload.first_name, payload.last_name),
    )
    doc = user_doc.model_dump()
    doc["settings"]["last_seen"] = now_ms()

    # Uniqueness is enforced by insert_unique; the lookups above skip hashing for obvious duplicates.
    while True:
        try:
            user_id = store.insert_unique("user", doc, ("id", "username", "email"))
            break
        except DuplicateError as e:
            if e.field != "id":
                raise HTTPException(status_code=400, detail=DUPLICATE_MESSAGES.get(e.field, "Already exists"))
            doc["id"] = generate_hexa_id()
    logger.info(f"User {user_id} signed up")
    return {"message": "User created successfully", "userId": user_id}


@app.post("/api/login", tags=["auth"])
def login(payload: LoginPayload, response: Response, store: Store = Depends(get_db)):
    if not payload.id or not payload.password:
        raise HTTPException(status_code=400, detail="ID and password are required")
    user = find_user_by_login(store, payload.id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid password")

    mark_online(store, user, True)
    user = store.find_one("user", {"id": user["id"]})
    access_token = create_access_token(data={"sub": user["id"]})
    set_session_cookie(response, access_token)
    contact_ids = realtime.contact_ids_of(store, user["id"])
    return {
        "message": "Login successful",
        "access_token": access_token,
        "token_type": "bearer",
        "user": session_user(user),
        "contacts": contact_ids,
        "chats": {cid: chat.conversation(store, user["id"], cid) for cid in contact_ids},
        "statuses": chat.list_statuses(user["id"], user, store),
        "calls": chat.list_calls(user["id"], user, store),
    }


@app.post("/api/auth/token", response_model=Token, tags=["auth"])
def login_for_token(form_data: OAuth2PasswordRequestForm = Depends(), store: Store = Depends(get_db)):
    user = find_user_by_login(store, form_data.username)
    if not user or not verify_password(form_data.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Incorrect ID or password")
    access_token = create_access_token(data={"sub": user["id"]})
    return Token(access_token=access_token)


@app.post("/api/logout", tags=["auth"])
def logout(response: Response, user=Depends(get_optional_user), store: Store = Depends(get_db)):
    if user is not None:
        mark_online(store, user, False)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"success": True}


@app.get("/api/session", tags=["auth"])
def read_session(user=Depends(get_optional_user)):
    return {"user": session_user(user) if user else None}


@app.get("/api/me", tags=["auth"])
def me(current_user: dict = Depends(get_current_user)):
    return session_user(current_user)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", 8000))
    logger.info(f"Starting Hexachats API on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
