import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from growthdesk.config import settings
from growthdesk.core.exceptions import NotFoundError
from growthdesk.models import AffiliateStatus
from growthdesk.schemas.affiliate import ClickCreate
from growthdesk.services.affiliate_tracking_service import AffiliateTrackingService, parse_user_agent

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
WINDOWS_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
WINDOWS_EDGE = WINDOWS_CHROME + " Edg/120.0.2210.91"
ANDROID_FIREFOX = "Mozilla/5.0 (Android 14; Mobile; rv:120.0) Gecko/120.0 Firefox/120.0"
IPAD_SAFARI = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/604.1"
)


@pytest.fixture
def service(db, tenant, clock):
    return AffiliateTrackingService(db, tenant.id, clock)


class TestParseUserAgent:

    @pytest.mark.parametrize("user_agent,expected", [
        (IPHONE_SAFARI, ("Mobile", "Safari", "iOS")),
        (WINDOWS_CHROME, ("Desktop", "Chrome", "Windows")),
        (WINDOWS_EDGE, ("Desktop", "Edge", "Windows")),
        (ANDROID_FIREFOX, ("Mobile", "Firefox", "Android")),
        (IPAD_SAFARI, ("Tablet", "Safari", "iOS")),
    ])
    def test_detection(self, user_agent, expected):
        info = parse_user_agent(user_agent)
        assert (info["device"], info["browser"], info["os"]) == expected

    @pytest.mark.parametrize("user_agent", [None, ""])
    def test_missing(self, user_agent):
        assert parse_user_agent(user_agent) == {"device": "Unknown", "browser": "Unknown", "os": "Unknown"}


class TestTrackClick:

    async def test_records_click_and_counts_it(self, service, factory, db, clock):
        affiliate = await factory.affiliate(plan=await factory.plan(cookie_days=7), code="SPRING")

        result = await service.track_click(ClickCreate(
            affiliate_code="SPRING",
            user_agent=IPHONE_SAFARI,
            utm_params={"utm_source": "newsletter"},
        ))

        assert result.affiliate_id == affiliate.id
        assert result.visitor_id
        assert result.expires_at == clock.now() + timedelta(days=7)
        await db.refresh(affiliate)
        assert affiliate.total_clicks == 1

    async def test_keeps_caller_visitor_id(self, service, factory):
        await factory.affiliate(code="SPRING")

        result = await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="visitor-1"))

        assert result.visitor_id == "visitor-1"

    async def test_default_cookie_window_without_plan(self, service, factory, clock):
        await factory.affiliate(plan=None, code="NOPLAN")

        result = await service.track_click(ClickCreate(affiliate_code="NOPLAN"))

        assert result.expires_at == clock.now() + timedelta(days=settings.DEFAULT_COOKIE_DURATION_DAYS)

    async def test_unknown_code(self, service):
        with pytest.raises(NotFoundError):
            await service.track_click(ClickCreate(affiliate_code="MISSING"))

    @pytest.mark.parametrize("status", [AffiliateStatus.PENDING, AffiliateStatus.SUSPENDED])
    async def test_inactive_affiliate(self, service, factory, status):
        await factory.affiliate(code="SLEEPY", status=status)

        with pytest.raises(NotFoundError):
            await service.track_click(ClickCreate(affiliate_code="SLEEPY"))


class TestAttribution:

    async def test_window_is_inclusive(self, service, factory, clock):
        affiliate = await factory.affiliate(plan=await factory.plan(cookie_days=30), code="SPRING")
        await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v1"))

        clock.advance(days=30)
        attribution = await service.get_attribution("v1")

        assert attribution is not None
        assert attribution.affiliate_id == affiliate.id
        assert attribution.tier == 1

    async def test_lapses_after_window(self, service, factory, clock):
        await factory.affiliate(plan=await factory.plan(cookie_days=30), code="SPRING")
        await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v1"))

        clock.advance(days=30, seconds=1)

        assert await service.get_attribution("v1") is None

    async def test_last_click_wins(self, service, factory, clock):
        await factory.affiliate(code="FIRST")
        second = await factory.affiliate(code="SECOND")
        await service.track_click(ClickCreate(affiliate_code="FIRST", visitor_id="v1"))
        clock.advance(hours=2)
        await service.track_click(ClickCreate(affiliate_code="SECOND", visitor_id="v1"))

        attribution = await service.get_attribution("v1")

        assert attribution.affiliate_id == second.id

    async def test_converted_click_no_longer_attributes(self, service, factory):
        await factory.affiliate(code="SPRING")
        click = await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v1"))

        await service.mark_converted(click.click_id, "ORD-1")

        assert await service.get_attribution("v1") is None

    async def test_unknown_visitor(self, service):
        assert await service.get_attribution("nobody") is None


class TestConversions:

    async def test_mark_converted_is_idempotent(self, service, factory, db, clock):
        affiliate = await factory.affiliate(code="SPRING")
        first = await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v1"))
        await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v2"))

        click = await service.mark_converted(first.click_id, "ORD-1")
        again = await service.mark_converted(first.click_id, "ORD-2")

        assert click.converted is True
        assert click.converted_at == clock.now()
        assert again.order_id == "ORD-1"
        await db.refresh(affiliate)
        assert affiliate.total_clicks == 2
        assert affiliate.total_conversions == 1
        assert affiliate.conversion_rate == Decimal("50.00")

    async def test_unknown_click(self, service):
        with pytest.raises(NotFoundError):
            await service.mark_converted(uuid.uuid4())


class TestChainAndStats:

    async def test_chain_is_capped_at_three_tiers(self, service, factory):
        plan = await factory.plan()
        chain = await factory.chain(4, plan)

        links = await service.get_affiliate_chain(chain[0].id)

        assert [(link.affiliate_id, link.tier) for link in links] == [
            (chain[0].id, 1), (chain[1].id, 2), (chain[2].id, 3),
        ]

    async def test_chain_of_root_affiliate(self, service, factory):
        root = await factory.affiliate()

        links = await service.get_affiliate_chain(root.id)

        assert [(link.affiliate_id, link.tier) for link in links] == [(root.id, 1)]

    async def test_click_stats(self, service, factory):
        affiliate = await factory.affiliate(code="SPRING")
        first = await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v1"))
        await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v1"))
        await service.track_click(ClickCreate(affiliate_code="SPRING", visitor_id="v2"))
        await service.mark_converted(first.click_id)

        stats = await service.get_click_stats(affiliate.id)

        assert stats.total_clicks == 3
        assert stats.conversions == 1
        assert stats.unique_visitors == 2
        assert stats.conversion_rate == Decimal("33.33")
