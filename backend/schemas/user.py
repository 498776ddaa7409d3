"""User administration request/response schemas."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, Field


class UserCreate(BaseModel):
    """Request to create a user."""

    name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=128)
    is_admin: bool = Field(default=False, validation_alias=AliasChoices("is_admin", "isAdmin"))


class UserUpdate(BaseModel):
    """Request to change a user. Omitted fields are left unchanged."""

    name: str = Field(min_length=1, max_length=100)
    password: str | None = Field(default=None, max_length=128)
    is_admin: bool | None = Field(
        default=None, validation_alias=AliasChoices("is_admin", "isAdmin")
    )


class UserRef(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class UserResponse(BaseModel):
    name: str
    is_admin: bool


class UserListResponse(BaseModel):
    users: list[UserResponse]


class UserMessageResponse(BaseModel):
    message: str
    name: str
