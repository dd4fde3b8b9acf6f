"""
Release Policy
Resolves the buyer confirmation window and its anchor for a store.

Precedence: a store's StoreReleasePolicy override wins when present, clamped to
Config.MIN/MAX_CONFIRMATION_WINDOW_HOURS; otherwise the global default applies.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session

from config import Config
from models import OrderStatus, ReleaseAnchor, StoreReleasePolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectivePolicy:
    window: timedelta
    anchor: ReleaseAnchor
    source: str  # "store" or "default"

    @property
    def anchor_status(self) -> OrderStatus:
        return OrderStatus.SHIPPED if self.anchor == ReleaseAnchor.SHIPPED else OrderStatus.DELIVERED

    def release_date(self, anchor_time: datetime) -> datetime:
        return anchor_time + self.window


class ReleasePolicyService:
    """Effective confirmation window per store"""

    @staticmethod
    def _clamp_hours(hours: int) -> int:
        return max(Config.MIN_CONFIRMATION_WINDOW_HOURS, min(hours, Config.MAX_CONFIRMATION_WINDOW_HOURS))

    @classmethod
    def default_policy(cls) -> EffectivePolicy:
        return EffectivePolicy(
            window=timedelta(days=Config.CONFIRMATION_WINDOW_DAYS),
            anchor=ReleaseAnchor(Config.RELEASE_ANCHOR),
            source="default",
        )

    @classmethod
    def for_store(cls, session: Session, store_id: str) -> EffectivePolicy:
        default = cls.default_policy()
        policy: Optional[StoreReleasePolicy] = session.get(StoreReleasePolicy, store_id)
        if policy is None:
            return default

        window = default.window
        if policy.confirmation_window_hours:
            hours = cls._clamp_hours(policy.confirmation_window_hours)
            if hours != policy.confirmation_window_hours:
                logger.warning(
                    f"⚠️ RELEASE_POLICY: store {store_id} window {policy.confirmation_window_hours}h "
                    f"clamped to {hours}h"
                )
            window = timedelta(hours=hours)

        anchor = ReleaseAnchor(policy.release_anchor) if policy.release_anchor else default.anchor
        return EffectivePolicy(window=window, anchor=anchor, source="store")

    @staticmethod
    def set_store_policy(
        session: Session,
        store_id: str,
        confirmation_window_hours: Optional[int] = None,
        release_anchor: Optional[str] = None,
    ) -> StoreReleasePolicy:
        if release_anchor is not None:
            release_anchor = ReleaseAnchor(release_anchor).value
        policy = session.get(StoreReleasePolicy, store_id)
        if policy is None:
            policy = StoreReleasePolicy(store_id=store_id)
            session.add(policy)
        policy.confirmation_window_hours = confirmation_window_hours
        policy.release_anchor = release_anchor
        session.flush()
        logger.info(
            f"🛠️ RELEASE_POLICY: store {store_id} window={confirmation_window_hours}h anchor={release_anchor}"
        )
        return policy
