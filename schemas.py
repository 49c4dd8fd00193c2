from pydantic import BaseModel, Field, EmailStr
from typing import Optional, Literal

OrderStatus = Literal["Pending", "in progress", "done"]


# Stored documents
class Settings(BaseModel):
    theme: Literal['light', 'dark'] = 'light'
    online: bool = False
    last_seen: int = 0

class User(BaseModel):
    id: str
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field(..., min_length=1, max_length=80)
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    hashed_password: str
    role: Literal['user', 'admin'] = 'user'
    bio: str = "Hey there! I'm using Hexachats."
    avatar: Optional[str] = None
    phone: str = ""
    settings: Settings = Field(default_factory=Settings)

class Contact(BaseModel):
    owner_id: str
    contact_id: str
    added_at: int

class Message(BaseModel):
    sender: str
    recipient: str
    message: str
    timestamp: int
    read: bool = False
    seq: int = 0

class Status(BaseModel):
    user_id: str
    media: str
    caption: str = ""
    type: Literal['image', 'video', 'text'] = 'image'
    timestamp: int

class Call(BaseModel):
    user_id: str
    contact_id: str
    type: Literal['voice', 'video'] = 'voice'
    direction: Literal['incoming', 'outgoing'] = 'outgoing'
    missed: bool = False
    timestamp: int

class Service(BaseModel):
    platform: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=100)
    price: float = Field(..., ge=0)
    active: bool = True

class OrderUser(BaseModel):
    id: str
    name: str
    email: Optional[str] = None

class Order(BaseModel):
    user_id: str
    user: OrderUser
    platform: str
    service: str
    link: str
    quantity: int = Field(..., gt=0)
    price: float = Field(..., ge=0)
    payment_method: str
    proof: str
    status: OrderStatus = 'Pending'


# Request payloads
class SignupPayload(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field(..., min_length=1, max_length=80)
    password: str
    username: Optional[str] = Field(None, min_length=3, max_length=40)
    email: Optional[EmailStr] = None

class LoginPayload(BaseModel):
    id: str
    password: str

class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    avatar: Optional[str] = None
    password: Optional[str] = None
    theme: Optional[Literal['light', 'dark']] = None

class ContactIn(BaseModel):
    contactId: str

class MessageIn(BaseModel):
    message: str = ""

class StatusIn(BaseModel):
    media: Optional[str] = None
    caption: Optional[str] = None
    type: Optional[Literal['image', 'video', 'text']] = None

class CallIn(BaseModel):
    contactId: str
    type: Literal['voice', 'video'] = 'voice'
    direction: Literal['incoming', 'outgoing'] = 'outgoing'
    missed: bool = False

class ServiceIn(BaseModel):
    platform: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=100)
    price: float = Field(..., ge=0)

class OrderStatusIn(BaseModel):
    status: OrderStatus


# Responses
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class PublicProfile(BaseModel):
    id: str
    first_name: str
    last_name: str
    bio: str = ""
    avatar: Optional[str] = None
    phone: str = ""
    email: Optional[str] = None
    settings: Settings
    last_seen_text: Optional[str] = None

class ContactOut(BaseModel):
    id: str
    first_name: str
    last_name: str
    avatar: Optional[str] = None
    settings: Settings