"""Pydantic schemas for registration and profiles."""

from __future__ import annotations

from typing import Annotated, Dict, List

from pydantic import BaseModel, Field

PHONE_PATTERN = r"^\+[1-9][0-9]{6,14}$"


class RegisterRequest(BaseModel):
	display_name: Annotated[str, Field(default="", max_length=80)]
	phone_number: Annotated[str, Field(pattern=PHONE_PATTERN)]


class UserProfile(BaseModel):
	id: str
	display_name: str
	profile_image: str = ""
	phone_number: str = ""
	contacts: Dict[str, str] = Field(default_factory=dict)
	friends: List[str] = Field(default_factory=list)
	blocked: List[str] = Field(default_factory=list)
