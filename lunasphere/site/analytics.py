"""
Visitor tracking and site analytics.

A visitor is one (client address, user agent) pair. Page views are fed by
the HTTP middleware in main.py; sightings older than the retention window
are pruned and "online" means active within the online window.
"""
import asyncio
import hashlib
from datetime import timedelta
from typing import Any, Dict, List

from lunasphere.base_service import BaseService, utcnow
from lunasphere.errors import ValidationError
from lunasphere.storage.base import AnalyticsRepository, UserRepository
from lunasphere.storage.models import AnalyticsCounters, VisitorRecord

MAX_VISITORS_LISTED = 50

# Public (camelCase) counter name -> AnalyticsCounters field
COUNTER_FIELDS = {
    "totalVisitors": "total_visitors",
    "pageViews": "page_views",
    "registeredUsers": "registered_users",
    "onlineNow": "online_now",
}


def counters_out(counters: AnalyticsCounters) -> Dict[str, int]:
    return {public: getattr(counters, field) for public, field in COUNTER_FIELDS.items()}


def anonymize(visitor_id: str) -> str:
    return "visitor_" + hashlib.sha256(visitor_id.encode("utf-8")).hexdigest()[:12]


class AnalyticsService(BaseService):
    def __init__(
        self,
        repository: AnalyticsRepository,
        users: UserRepository,
        retention_hours: int = 24,
        online_window_minutes: int = 5,
    ):
        super().__init__("analytics")
        self._analytics = repository
        self._users = users
        self.retention = timedelta(hours=retention_hours)
        self.online_window = timedelta(minutes=online_window_minutes)
        # Counters and sightings are read-modify-write; one page view at a time.
        self._lock = asyncio.Lock()

    async def _online_count(self) -> int:
        cutoff = utcnow() - self.online_window
        return sum(1 for v in await self._analytics.list_visitors() if v.last_activity > cutoff)

    async def record_page_view(self, ip: str, user_agent: str, path: str) -> AnalyticsCounters:
        """
        Count one page view.

        A first sighting of (ip, user agent) also bumps totalVisitors.
        """
        now = utcnow()
        visitor_id = f"{ip}_{user_agent}"
        async with self._lock:
            counters = await self._analytics.get_counters()
            visitor = await self._analytics.get_visitor(visitor_id)
            if visitor is None:
                visitor = VisitorRecord(
                    id=visitor_id,
                    ip=ip,
                    user_agent=user_agent,
                    first_seen=now,
                    last_activity=now,
                    pages=[path],
                )
                counters.total_visitors += 1
            else:
                visitor.last_activity = now
                if path not in visitor.pages:
                    visitor.pages.append(path)
            await self._analytics.save_visitor(visitor)

            counters.page_views += 1
            await self._analytics.prune_visitors(now - self.retention)
            counters.online_now = await self._online_count()
            await self._analytics.save_counters(counters)
        return counters

    async def get_analytics(self) -> Dict[str, int]:
        """Current counters; registeredUsers and onlineNow are computed live."""
        counters = await self._analytics.get_counters()
        counters.registered_users = await self._users.count()
        counters.online_now = await self._online_count()
        return counters_out(counters)

    async def update_counters(self, updates: Dict[str, Any], actor: str) -> Dict[str, int]:
        """
        Overwrite known counters (admin).

        Unknown keys are ignored; values must be non-negative integers.
        """
        async with self._lock:
            counters = await self._analytics.get_counters()
            for public, field in COUNTER_FIELDS.items():
                if public not in updates:
                    continue
                value = updates[public]
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise ValidationError(f"{public} must be a non-negative integer")
                setattr(counters, field, value)
            await self._analytics.save_counters(counters)
        self.log_event("analytics.updated", {"by": actor, "counters": counters_out(counters)})
        return counters_out(counters)

    async def list_visitors(self) -> List[Dict[str, Any]]:
        """Most recent sightings, without addresses or user agents."""
        now = utcnow()
        visitors = (await self._analytics.list_visitors())[:MAX_VISITORS_LISTED]
        return [
            {
                "id": anonymize(v.id),
                "location": v.location,
                "timestamp": v.first_seen.isoformat(),
                "pages": len(v.pages) or 1,
                "online": now - v.last_activity < self.online_window,
            }
            for v in visitors
        ]

    async def visitor_count(self) -> int:
        return len(await self._analytics.list_visitors())

    async def cleanup(self) -> int:
        """Drop sightings past the retention window and refresh onlineNow."""
        async with self._lock:
            removed = await self._analytics.prune_visitors(utcnow() - self.retention)
            counters = await self._analytics.get_counters()
            counters.online_now = await self._online_count()
            await self._analytics.save_counters(counters)
        if removed:
            self.log_event("visitors.pruned", {"removed": removed})
        return removed
