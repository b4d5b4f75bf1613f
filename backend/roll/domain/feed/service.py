"""Time-windowed feed of posts from the viewer and the viewer's friends."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Dict, List, Optional

from roll.domain.common.fanout import gather_bounded
from roll.domain.feed.schemas import FeedPost
from roll.domain.social import policy
from roll.domain.social.models import USERS, User
from roll.obs import metrics as obs_metrics
from roll.settings import settings
from roll.store.base import SERVER_TIMESTAMP, DocumentStore, utcnow, where

logger = logging.getLogger(__name__)

POSTS = "posts"


class FeedService:
	def __init__(self, store: DocumentStore) -> None:
		self.store = store

	async def create_post(self, poster_id: str, picture_url: str) -> str:
		poster_id = str(poster_id)
		if not picture_url:
			raise ValueError("picture_url required")
		await policy.load_user(self.store, poster_id)
		post_id = await self.store.add(
			POSTS,
			{"picture": picture_url, "poster": poster_id, "timestamp": SERVER_TIMESTAMP},
		)
		logger.info("Post %s created", post_id)
		return post_id

	def _visible_posters(self, viewer: User) -> set[str]:
		allowed = set(viewer.friends) | {viewer.id}
		return allowed - viewer.blocked - viewer.blocked_by

	async def posts_within_window(self, viewer_id: str, *, days: Optional[int] = None) -> List[FeedPost]:
		"""Posts newer than the window, newest first, with poster details."""
		started = time.perf_counter()
		viewer = await policy.load_user(self.store, str(viewer_id))
		cutoff = utcnow() - timedelta(days=days if days is not None else settings.feed_window_days)
		snapshots = await self.store.query(
			POSTS,
			[where("timestamp", ">", cutoff)],
			order_by="timestamp",
			descending=True,
		)
		allowed = self._visible_posters(viewer)
		candidates = []
		for snapshot in snapshots:
			picture = snapshot.get("picture")
			poster = snapshot.get("poster")
			if not picture or not poster:
				logger.debug("Skipping incomplete post %s", snapshot.id)
				continue
			if str(poster) in allowed:
				candidates.append(snapshot)

		poster_ids = list(dict.fromkeys(str(snapshot.get("poster")) for snapshot in candidates))
		profiles = await gather_bounded(poster_ids, self._load_poster)
		posters: Dict[str, Optional[User]] = dict(zip(poster_ids, profiles))

		posts: List[FeedPost] = []
		for snapshot in candidates:
			poster = posters.get(str(snapshot.get("poster")))
			if poster is None:
				continue
			posts.append(
				FeedPost(
					id=snapshot.id,
					picture_url=str(snapshot.get("picture")),
					poster_id=poster.id,
					created_at=snapshot.get("timestamp"),
					poster_display_name=poster.display_name,
					poster_profile_image=poster.profile_image,
				)
			)
		obs_metrics.observe_feed_build(time.perf_counter() - started)
		return posts

	async def _load_poster(self, user_id: str) -> Optional[User]:
		snapshot = await self.store.get(USERS, user_id)
		if not snapshot.exists:
			logger.warning("Poster %s missing, dropping their posts", user_id)
			return None
		return User.from_snapshot(snapshot)
