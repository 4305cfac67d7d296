"""
Pydantic schemas for the brewlog API.

Request bodies are validated once here; the services below never
re-validate their structure.
"""

from __future__ import annotations

import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

ProcessingMethod = Literal["Washed", "Natural", "Honey", "Semi-washed", "Other"]
RoastLevel = Literal["Light", "Medium-Light", "Medium", "Medium-Dark", "Dark"]
BrewMethod = Literal[
    "Espresso",
    "Pour Over",
    "French Press",
    "Aeropress",
    "Cold Brew",
    "Moka Pot",
    "Chemex",
    "V60",
    "Kalita Wave",
    "Siphon",
    "Drip",
    "Other",
]
GrindSize = Literal[
    "Extra Fine",
    "Fine",
    "Medium-Fine",
    "Medium",
    "Medium-Coarse",
    "Coarse",
    "Extra Coarse",
]


class ImageResponse(BaseModel):
    image_id: str
    url: str
    thumbnail_url: str
    filename: str
    original_name: Optional[str] = None
    is_primary: bool
    uploaded_at: str


class SkippedFileResponse(BaseModel):
    filename: str
    reason: str


class ImageListResponse(BaseModel):
    images: List[ImageResponse]


class UploadResponse(BaseModel):
    message: str
    images: List[ImageResponse]
    added: List[ImageResponse]
    skipped: List[SkippedFileResponse]


class MessageResponse(BaseModel):
    message: str


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(..., min_length=3, max_length=64)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=256)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class DeleteAccountRequest(BaseModel):
    password: str


class UserResponse(BaseModel):
    user_id: str
    username: str
    email: str
    avatar: Optional[ImageResponse] = None
    created_at: float


class TokenResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user: UserResponse


class AvatarResponse(BaseModel):
    message: str
    avatar: Optional[ImageResponse] = None


class CoffeeCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200)
    roaster: str = Field(..., min_length=1, max_length=200)
    origin: str = Field(..., min_length=1, max_length=200)
    roast_date: dt.date
    processing_method: ProcessingMethod = "Other"
    roast_level: RoastLevel = "Medium"
    variety: Optional[str] = None
    altitude: Optional[str] = None
    flavor_notes: List[str] = Field(default_factory=list)
    price: Optional[float] = Field(default=None, ge=0)
    is_public: bool = False


class CoffeeUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    roaster: Optional[str] = Field(default=None, min_length=1, max_length=200)
    origin: Optional[str] = Field(default=None, min_length=1, max_length=200)
    roast_date: Optional[dt.date] = None
    processing_method: Optional[ProcessingMethod] = None
    roast_level: Optional[RoastLevel] = None
    variety: Optional[str] = None
    altitude: Optional[str] = None
    flavor_notes: Optional[List[str]] = None
    price: Optional[float] = Field(default=None, ge=0)
    is_public: Optional[bool] = None


class CoffeeResponse(CoffeeCreate):
    id: str
    owner_id: str
    images: List[ImageResponse]
    primary_image: Optional[ImageResponse] = None
    created_at: float
    updated_at: float


class ListCoffeesResponse(BaseModel):
    coffees: List[CoffeeResponse]


class BrewRatio(BaseModel):
    coffee: float = Field(..., ge=0)
    water: float = Field(..., ge=0)


class BrewCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    coffee_id: str
    brew_method: BrewMethod
    brew_temperature: float = Field(..., ge=0, le=100)
    brew_ratio: BrewRatio
    grind_size: GrindSize
    brew_time: Optional[int] = Field(default=None, ge=0)
    rating: int = Field(..., ge=1, le=10)
    notes: Optional[str] = Field(default=None, max_length=1000)
    flavor_notes: List[str] = Field(default_factory=list)
    is_public: bool = False


class BrewUpdate(BaseModel):
    """Every field optional; the coffee a brew belongs to is fixed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    brew_method: Optional[BrewMethod] = None
    brew_temperature: Optional[float] = Field(default=None, ge=0, le=100)
    brew_ratio: Optional[BrewRatio] = None
    grind_size: Optional[GrindSize] = None
    brew_time: Optional[int] = Field(default=None, ge=0)
    rating: Optional[int] = Field(default=None, ge=1, le=10)
    notes: Optional[str] = Field(default=None, max_length=1000)
    flavor_notes: Optional[List[str]] = None
    is_public: Optional[bool] = None


class BrewResponse(BrewCreate):
    id: str
    owner_id: str
    likes: List[str] = Field(default_factory=list)
    likes_count: int = 0
    brew_ratio_string: Optional[str] = None
    images: List[ImageResponse]
    primary_image: Optional[ImageResponse] = None
    created_at: float
    updated_at: float


class ListBrewsResponse(BaseModel):
    brews: List[BrewResponse]


class BrewStatsResponse(BaseModel):
    summary: dict
    brew_method_distribution: List[dict]
    temperature_stats: List[dict]


class PublicBrewsResponse(BaseModel):
    brews: List[BrewResponse]
    total: int
    current_page: int
    total_pages: int


class LikeResponse(BaseModel):
    liked: bool
    likes_count: int


class CoffeeStatsResponse(BaseModel):
    summary: dict
    roast_level_distribution: List[dict]
    origin_distribution: List[dict]


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=64)
    email: Optional[EmailStr] = None


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=256)


class PublicUserResponse(BaseModel):
    user_id: str
    username: str
    avatar: Optional[ImageResponse] = None
    created_at: float


class FriendRequestCreate(BaseModel):
    recipient_id: str


class FriendshipResponse(BaseModel):
    friendship_id: str
    requester_id: str
    recipient_id: str
    status: Literal["pending", "accepted", "rejected"]
    created_at: float
    updated_at: float


class FriendEntryResponse(BaseModel):
    friendship_id: str
    user: PublicUserResponse
    since: float


class FriendListResponse(BaseModel):
    friends: List[FriendEntryResponse]
    pending_received: List[FriendEntryResponse]
    pending_sent: List[FriendEntryResponse]


class UserSearchResponse(BaseModel):
    users: List[PublicUserResponse]


class FriendProfileResponse(BaseModel):
    user: PublicUserResponse
    stats: dict
