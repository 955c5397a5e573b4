from types import SimpleNamespace
from unittest.mock import patch

import pytest

from routers import rate_limit as rate_limit_module
from routers.rate_limit import client_ip, rate_limit
from services.errors import RateLimited


def _request(ip: str = "198.51.100.4", forwarded: str = "", disabled: bool = False):
    headers = {"x-forwarded-for": forwarded} if forwarded else {}
    return SimpleNamespace(
        headers=headers,
        client=SimpleNamespace(host=ip),
        app=SimpleNamespace(state=SimpleNamespace(disable_rate_limits=disabled)),
    )


async def _redis_down(key: str, limit: int, window_seconds: int) -> bool:
    raise ConnectionError("redis down")


def test_client_ip_prefers_first_forwarded_hop():
    assert client_ip(_request(forwarded="203.0.113.9, 10.0.0.2")) == "203.0.113.9"
    assert client_ip(_request()) == "198.51.100.4"


@pytest.mark.asyncio
async def test_local_fallback_enforces_limit_per_client():
    dependency = rate_limit("generation_create", limit=2, window_seconds=60)
    with patch.object(rate_limit_module, "_consume_redis_quota", _redis_down):
        await dependency(_request())
        await dependency(_request())
        with pytest.raises(RateLimited) as exc_info:
            await dependency(_request())
        await dependency(_request(ip="198.51.100.5"))

    assert exc_info.value.status_code == 429
    assert exc_info.value.code == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_disabled_rate_limits_skip_counting():
    dependency = rate_limit("onboarding_start", limit=1, window_seconds=60)
    with patch.object(rate_limit_module, "_consume_redis_quota", _redis_down):
        for _ in range(3):
            await dependency(_request(disabled=True))
    assert rate_limit_module._local_counters == {}
