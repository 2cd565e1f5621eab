"""
Affiliate Tracking Service

Handles the visitor side of the affiliate program:
- Click tracking with device/browser/OS detection
- Last-click attribution within the plan's cookie window
- Conversion counting
- Referral chain resolution for multi-tier commissions
"""

import logging
import re
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update

from growthdesk.config import settings
from growthdesk.core.exceptions import AttributionExpiredError, NotFoundError
from growthdesk.core.tenant_context import TenantScopedService
from growthdesk.models.affiliate import (
    Affiliate,
    AffiliateClick,
    AffiliateStatus,
    CommissionPlan,
)
from growthdesk.schemas.affiliate import (
    AffiliateChainLink,
    AttributionResult,
    ClickCreate,
    ClickStats,
    ClickTrackResult,
)

logger = logging.getLogger(__name__)

# Referral chains pay at most three tiers
MAX_TIERS = 3


def parse_user_agent(user_agent: Optional[str]) -> dict:
    """Rough device/browser/OS detection from a User-Agent header."""
    if not user_agent:
        return {"device": "Unknown", "browser": "Unknown", "os": "Unknown"}

    device = "Desktop"
    if re.search(r"tablet|ipad", user_agent, re.I):
        device = "Tablet"
    elif re.search(r"mobile|iphone|android", user_agent, re.I):
        device = "Mobile"

    # Order matters: Edge and Chrome UAs also mention Safari
    browser = "Unknown"
    if re.search(r"edg(e|a|ios)?/", user_agent, re.I):
        browser = "Edge"
    elif re.search(r"firefox|fxios", user_agent, re.I):
        browser = "Firefox"
    elif re.search(r"chrome|crios", user_agent, re.I):
        browser = "Chrome"
    elif re.search(r"safari", user_agent, re.I):
        browser = "Safari"

    # Android UAs mention Linux, iOS UAs mention Mac OS X
    os_name = "Unknown"
    if re.search(r"windows", user_agent, re.I):
        os_name = "Windows"
    elif re.search(r"android", user_agent, re.I):
        os_name = "Android"
    elif re.search(r"iphone|ipad|ipod|\bios\b", user_agent, re.I):
        os_name = "iOS"
    elif re.search(r"mac", user_agent, re.I):
        os_name = "macOS"
    elif re.search(r"linux", user_agent, re.I):
        os_name = "Linux"

    return {"device": device, "browser": browser, "os": os_name}


class AffiliateTrackingService(TenantScopedService):
    """Click tracking and attribution for one tenant."""

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_affiliate_by_code(self, affiliate_code: str) -> Optional[Affiliate]:
        result = await self.db.execute(
            self._scoped(Affiliate).where(Affiliate.affiliate_code == affiliate_code)
        )
        return result.scalar_one_or_none()

    async def get_plan(self, affiliate: Affiliate) -> Optional[CommissionPlan]:
        """The affiliate's commission plan, or None if it has none."""
        if not affiliate.commission_plan_id:
            return None
        return await self._get(CommissionPlan, affiliate.commission_plan_id)

    async def cookie_duration_days(self, affiliate: Affiliate) -> int:
        plan = await self.get_plan(affiliate)
        if plan and plan.cookie_duration_days:
            return plan.cookie_duration_days
        return settings.DEFAULT_COOKIE_DURATION_DAYS

    # ========================================================================
    # Clicks
    # ========================================================================

    async def track_click(self, data: ClickCreate) -> ClickTrackResult:
        """
        Record a referral click.

        Generates a visitor id when the caller has none yet.

        Raises:
            NotFoundError: If no ACTIVE affiliate has this code
        """
        affiliate = await self.get_affiliate_by_code(data.affiliate_code)
        if not affiliate or affiliate.status != AffiliateStatus.ACTIVE.value:
            raise NotFoundError("Affiliate", data.affiliate_code)

        now = self.clock.now()
        visitor_id = data.visitor_id or str(uuid.uuid4())
        cookie_days = await self.cookie_duration_days(affiliate)
        device_info = parse_user_agent(data.user_agent)

        click = AffiliateClick(
            tenant_id=self.tenant_id,
            affiliate_id=affiliate.id,
            visitor_id=visitor_id,
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            referrer=data.referrer,
            landing_page=data.landing_page,
            utm_params=data.utm_params or {},
            device_type=device_info["device"],
            browser=device_info["browser"],
            os=device_info["os"],
            converted=False,
            created_at=now,
        )
        self.db.add(click)

        # Atomic increment, concurrent clicks must not contend on the affiliate version
        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate.id, Affiliate.tenant_id == self.tenant_id)
            .values(total_clicks=Affiliate.total_clicks + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Tracked click for affiliate {affiliate.affiliate_code}, visitor {visitor_id}")

        return ClickTrackResult(
            click_id=click.id,
            affiliate_id=affiliate.id,
            visitor_id=visitor_id,
            expires_at=now + timedelta(days=cookie_days),
        )

    # ========================================================================
    # Attribution
    # ========================================================================

    async def get_attribution(self, visitor_id: str) -> Optional[AttributionResult]:
        """
        Affiliate credited for a visitor's order.

        Uses the visitor's most recent unconverted click. A click stays valid
        through the end of its cookie window, inclusive.

        Returns:
            AttributionResult with tier 1, or None if no valid click exists
        """
        result = await self.db.execute(
            self._scoped(AffiliateClick)
            .where(
                AffiliateClick.visitor_id == visitor_id,
                AffiliateClick.converted.is_(False),
            )
            .order_by(AffiliateClick.created_at.desc())
            .limit(1)
        )
        click = result.scalar_one_or_none()
        if not click:
            return None

        try:
            await self._check_attribution_window(click)
        except AttributionExpiredError as e:
            logger.debug(str(e))
            return None

        return AttributionResult(affiliate_id=click.affiliate_id, click_id=click.id, tier=1)

    async def _check_attribution_window(self, click: AffiliateClick) -> datetime:
        affiliate = await self._get(Affiliate, click.affiliate_id)
        cookie_days = (
            await self.cookie_duration_days(affiliate)
            if affiliate else settings.DEFAULT_COOKIE_DURATION_DAYS
        )
        expires_at = click.created_at + timedelta(days=cookie_days)
        if self.clock.now() > expires_at:
            raise AttributionExpiredError(
                f"Click {click.id} has expired ({cookie_days} days)",
                {"click_id": str(click.id), "expired_at": expires_at.isoformat()},
            )
        return expires_at

    # ========================================================================
    # Conversions
    # ========================================================================

    async def mark_converted(self, click_id: uuid.UUID, order_id: Optional[str] = None) -> AffiliateClick:
        """
        Mark a click as converted and refresh the affiliate's conversion rate.

        Converting an already converted click changes nothing.

        Raises:
            NotFoundError: If the click doesn't exist for this tenant
        """
        click = await self._mark_converted(click_id, order_id)
        await self.db.commit()
        return click

    async def _mark_converted(self, click_id: uuid.UUID, order_id: Optional[str] = None) -> AffiliateClick:
        click = await self._get_or_raise(AffiliateClick, click_id)
        if click.converted:
            return click

        click.converted = True
        click.converted_at = self.clock.now()
        click.order_id = order_id

        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == click.affiliate_id, Affiliate.tenant_id == self.tenant_id)
            .values(total_conversions=Affiliate.total_conversions + 1)
            .execution_options(synchronize_session=False)
        )

        counts = await self.db.execute(
            select(Affiliate.total_clicks, Affiliate.total_conversions).where(
                Affiliate.id == click.affiliate_id,
                Affiliate.tenant_id == self.tenant_id,
            )
        )
        row = counts.one_or_none()
        if row and row.total_clicks > 0:
            rate = (Decimal(row.total_conversions) * 100 / Decimal(row.total_clicks)).quantize(Decimal("0.01"))
            await self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == click.affiliate_id, Affiliate.tenant_id == self.tenant_id)
                .values(conversion_rate=rate)
                .execution_options(synchronize_session=False)
            )

        await self.db.flush()
        logger.info(f"Click {click.id} converted (order {order_id})")
        return click

    # ========================================================================
    # Referral chain
    # ========================================================================

    async def get_affiliate_chain(self, affiliate_id: uuid.UUID) -> List[AffiliateChainLink]:
        """
        Walk the parent chain starting at ``affiliate_id``.

        Tier 1 is the affiliate itself. Stops at a missing link, at the tier
        cap, or when an affiliate repeats (misconfigured cycle).
        """
        max_tiers = min(settings.MAX_COMMISSION_TIERS, MAX_TIERS)
        chain: List[AffiliateChainLink] = []
        visited = set()
        current_id = affiliate_id
        tier = 1

        while current_id and tier <= max_tiers:
            if current_id in visited:
                logger.warning(
                    f"Referral cycle detected at affiliate {current_id} "
                    f"while resolving chain for {affiliate_id}"
                )
                break
            visited.add(current_id)

            affiliate = await self._get(Affiliate, current_id)
            if not affiliate:
                break

            chain.append(AffiliateChainLink(affiliate_id=current_id, tier=tier))
            current_id = affiliate.parent_affiliate_id
            tier += 1

        return chain

    # ========================================================================
    # Statistics
    # ========================================================================

    async def get_click_stats(
        self,
        affiliate_id: uuid.UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> ClickStats:
        filters = [
            AffiliateClick.tenant_id == self.tenant_id,
            AffiliateClick.affiliate_id == affiliate_id,
        ]
        if start_date:
            filters.append(AffiliateClick.created_at >= start_date)
        if end_date:
            filters.append(AffiliateClick.created_at <= end_date)

        result = await self.db.execute(
            select(
                func.count(AffiliateClick.id),
                func.count(AffiliateClick.id).filter(AffiliateClick.converted.is_(True)),
                func.count(func.distinct(AffiliateClick.visitor_id)),
            ).where(*filters)
        )
        total, conversions, unique_visitors = result.one()

        rate = Decimal("0.00")
        if total:
            rate = (Decimal(conversions) * 100 / Decimal(total)).quantize(Decimal("0.01"))

        return ClickStats(
            total_clicks=total,
            conversions=conversions,
            conversion_rate=rate,
            unique_visitors=unique_visitors,
        )
