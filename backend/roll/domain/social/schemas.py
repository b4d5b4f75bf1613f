"""Pydantic rows handed to UI layers by the social read-models."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class CandidateRow(BaseModel):
	id: str
	display_name: str
	profile_image: str = ""
	request_sent: bool = Field(default=False, description="Open request from the viewer to this user")


class FriendProfile(BaseModel):
	id: str
	display_name: str
	profile_image: str = ""


class IncomingRequest(BaseModel):
	id: str
	from_user_id: str
	to_user_id: str
	status: Literal["pending", "accepted", "declined"]
	created_at: Optional[datetime] = None
	display_name: str
	profile_image: str = ""

