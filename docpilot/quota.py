"""Per-user premium usage ledger.

Free users get a weekly allowance of premium calls, subscribers a monthly one.
A window whose reset time has passed counts as empty; the counter itself is only
reset when the next use is recorded.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .db import Database
from .schemas import UsageStats


@dataclass(frozen=True)
class Entitlement:
    allowed: bool
    reason: Optional[str] = None
    remaining_uses: Optional[int] = None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


class QuotaLedger:
    def __init__(self, db: Database, weekly_limit: int = 10, monthly_limit: int = 150):
        self.db = db
        self.weekly_limit = weekly_limit
        self.monthly_limit = monthly_limit

    def subscription_tier(self, user: Dict[str, Any], now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        period_end = _parse_ts(user.get("period_end"))
        if user.get("subscription_status") == "active" and period_end and period_end > now:
            return "premium"
        return "free"

    def _window(self, user: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        if self.subscription_tier(user, now) == "premium":
            count_col, reset_col, limit = "monthly_uses", "monthly_reset_at", self.monthly_limit
        else:
            count_col, reset_col, limit = "weekly_uses", "weekly_reset_at", self.weekly_limit
        reset_at = _parse_ts(user.get(reset_col))
        expired = reset_at is None or reset_at <= now
        used = 0 if expired else int(user.get(count_col) or 0)
        return {
            "count_col": count_col,
            "reset_col": reset_col,
            "limit": limit,
            "used": used,
            "expired": expired,
            "reset_at": reset_at,
        }

    async def check_premium_entitlement(self, user_id: str) -> Entitlement:
        user = await self.db.get_user(user_id)
        if not user:
            return Entitlement(allowed=False, reason="User not found")
        window = self._window(user, datetime.now(timezone.utc))
        remaining = window["limit"] - window["used"]
        if remaining <= 0:
            period = "month" if window["count_col"] == "monthly_uses" else "week"
            return Entitlement(
                allowed=False,
                reason=f"You've used all {window['limit']} premium AI requests this {period}.",
                remaining_uses=0,
            )
        return Entitlement(allowed=True, remaining_uses=remaining)

    async def record_premium_usage(self, user_id: str) -> int:
        """Count one premium use and return the uses left in the current window."""
        now = datetime.now(timezone.utc)
        async with self.db.transaction() as conn:
            cursor = await conn.execute("SELECT * FROM users WHERE id=?", (user_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                return 0
            user = dict(row)
            window = self._window(user, now)
            if window["expired"]:
                if window["count_col"] == "monthly_uses":
                    next_reset = _parse_ts(user.get("period_end")) or _next_month_start(now)
                else:
                    next_reset = (now + timedelta(days=7)).replace(hour=0, minute=0, second=0, microsecond=0)
                used = 1
                await conn.execute(
                    f"UPDATE users SET {window['count_col']}=?, {window['reset_col']}=? WHERE id=?",
                    (used, _iso(next_reset), user_id),
                )
            else:
                used = window["used"] + 1
                await conn.execute(
                    f"UPDATE users SET {window['count_col']}=? WHERE id=?",
                    (used, user_id),
                )
        return max(window["limit"] - used, 0)

    async def usage_stats(self, user_id: str) -> Optional[UsageStats]:
        user = await self.db.get_user(user_id)
        if not user:
            return None
        now = datetime.now(timezone.utc)
        window = self._window(user, now)
        reset_at = None if window["expired"] else window["reset_at"]
        return UsageStats(
            tier=self.subscription_tier(user, now),
            used=window["used"],
            limit=window["limit"],
            remaining=max(window["limit"] - window["used"], 0),
            resets_at=_iso(reset_at) if reset_at else None,
        )
