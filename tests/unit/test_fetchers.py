import httpx
import pytest

from aggregator.services.fetchers import (
    FetchOutcome,
    StaticFetcher,
    UserAgentPool,
    build_headers,
    detect_block,
)


def make_fetcher(settings, handler) -> StaticFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return StaticFetcher(settings=settings, client=client, user_agents=UserAgentPool(rotate=False))


# =============================================================================
# Block detection
# =============================================================================

@pytest.mark.parametrize("status", [429, 503])
def test_detect_block_by_status(status):
    assert detect_block(status, "<html>fine</html>") == f"http_{status}"


def test_detect_block_login_wall():
    assert detect_block(200, "<html></html>", "https://login.1688.com/member/signin.htm") == "login_wall"
    assert detect_block(200, "<html></html>", "https://www.alibaba.com/trade/search?SearchText=lamp") is None


def test_detect_block_body_marker(load_fixture):
    reason = detect_block(200, load_fixture("block_page.html"))
    assert reason == "marker:slide to verify"


def test_short_page_markers_ignored_on_full_pages():
    short = "<html><body>Please complete the CAPTCHA</body></html>"
    long = short + ("<div>listing</div>" * 3000)
    assert detect_block(200, short) == "marker:captcha"
    assert detect_block(200, long) is None


def test_detect_block_clean_page(load_fixture):
    assert detect_block(200, load_fixture("alibaba_search.html")) is None
    assert detect_block(200, None) is None


def test_fetch_outcome_ok():
    assert FetchOutcome(url="u", status=200, html="<html/>").ok
    assert not FetchOutcome(url="u", status=200, html="<html/>", blocked=True).ok
    assert not FetchOutcome(url="u", error="HTTP 500").ok


# =============================================================================
# User agents
# =============================================================================

def test_user_agent_pool_without_rotation_is_stable():
    pool = UserAgentPool(rotate=False)
    assert pool.get() == pool.get() == UserAgentPool.DESKTOP_USER_AGENTS[0]


def test_user_agent_pool_rotation_draws_from_pool():
    pool = UserAgentPool(rotate=True)
    assert all(pool.get() in UserAgentPool.DESKTOP_USER_AGENTS for _ in range(20))


def test_build_headers():
    headers = build_headers("agent/1.0", "zh-CN")
    assert headers["User-Agent"] == "agent/1.0"
    assert headers["Accept-Language"] == "zh-CN"


# =============================================================================
# Static transport
# =============================================================================

@pytest.mark.asyncio
async def test_static_fetch_success(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ua"] = request.headers["User-Agent"]
        return httpx.Response(200, text="<html><body>results</body></html>")

    async with make_fetcher(settings, handler) as fetcher:
        outcome = await fetcher.fetch("https://www.alibaba.com/trade/search?SearchText=lamp")

    assert outcome.ok
    assert outcome.status == 200
    assert "results" in outcome.html
    assert seen["ua"] == UserAgentPool.DESKTOP_USER_AGENTS[0]


@pytest.mark.asyncio
async def test_static_fetch_non_2xx_is_an_error(settings):
    fetcher = make_fetcher(settings, lambda request: httpx.Response(404, text="not found"))
    outcome = await fetcher.fetch("https://www.alibaba.com/missing")

    assert outcome.error == "HTTP 404"
    assert outcome.html == ""
    assert not outcome.blocked
    await fetcher.close()


@pytest.mark.asyncio
async def test_static_fetch_rate_limited_is_a_block(settings):
    fetcher = make_fetcher(settings, lambda request: httpx.Response(429, text="slow down"))
    outcome = await fetcher.fetch("https://www.alibaba.com/trade/search?SearchText=lamp")

    assert outcome.blocked
    assert outcome.block_reason == "http_429"
    assert outcome.error is None
    await fetcher.close()


@pytest.mark.asyncio
async def test_static_fetch_follows_redirect_to_login_wall(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.1688.com":
            return httpx.Response(200, text="<html>please sign in</html>")
        return httpx.Response(302, headers={"Location": "https://login.1688.com/member/signin.htm"})

    fetcher = make_fetcher(settings, handler)
    outcome = await fetcher.fetch("https://s.1688.com/selloffer/offer_search.htm?keywords=lamp")

    assert outcome.blocked
    assert outcome.block_reason == "login_wall"
    assert outcome.final_url.startswith("https://login.1688.com/")
    await fetcher.close()


@pytest.mark.asyncio
async def test_static_fetch_network_error_is_reported(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = make_fetcher(settings, handler)
    outcome = await fetcher.fetch("https://www.indiamart.com/search.mp?ss=lamp")

    assert outcome.error.startswith("ConnectError")
    assert outcome.html == ""
    assert not outcome.ok
    await fetcher.close()
