"""Feed rows handed to UI layers."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class FeedPost(BaseModel):
	id: str
	picture_url: str
	poster_id: str
	created_at: datetime
	poster_display_name: str
	poster_profile_image: str = ""
