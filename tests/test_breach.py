import httpx
import pytest

from booking_auth.auth.breach import BreachChecker, match_suffix, sha1_hex

PASSWORD = "password123"
DIGEST = sha1_hex(PASSWORD)
PREFIX, SUFFIX = DIGEST[:5], DIGEST[5:]


def make_checker(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BreachChecker(client, url="https://breach.test/range", **kwargs)


def range_body(count):
    return "\r\n".join([
        "0018A45C4D1DEF81644B54AB7F969B88D65:1",
        f"{SUFFIX}:{count}",
        "00D4F6E8FA6EECAD2A3AA415EEC418D38EC:0",
    ])


def test_match_suffix():
    assert match_suffix(range_body(42), SUFFIX) == 42
    assert match_suffix(range_body(42), "F" * 35) == 0
    assert match_suffix("", SUFFIX) == 0


async def test_only_the_prefix_leaves_the_process():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, text=range_body(3))

    checker = make_checker(handler)
    result = await checker.is_breached(PASSWORD)

    assert result.breached and result.count == 3
    assert seen[0].path == f"/range/{PREFIX}"
    assert SUFFIX not in str(seen[0])
    await checker.aclose()


async def test_unknown_password_is_clean():
    checker = make_checker(lambda request: httpx.Response(200, text="ABCDEF0123456789ABCDEF0123456789ABC:5"))
    result = await checker.is_breached("An0ther!Unique#Pass")
    assert not result.breached
    assert result.count == 0
    assert await checker.validate_not_breached("An0ther!Unique#Pass") is None


async def test_padding_rows_with_zero_count_are_not_breaches():
    checker = make_checker(lambda request: httpx.Response(200, text=range_body(0)))
    assert (await checker.is_breached(PASSWORD)).breached is False


async def test_validate_message_names_exposure_count():
    checker = make_checker(lambda request: httpx.Response(200, text=range_body(1234)))
    message = await checker.validate_not_breached(PASSWORD)
    assert "1,234 data breaches" in message


async def test_threshold_allows_rare_exposures():
    checker = make_checker(lambda request: httpx.Response(200, text=range_body(2)), threshold=10)
    assert await checker.validate_not_breached(PASSWORD) is None


def unavailable(request):
    return httpx.Response(503)


def timeout(request):
    raise httpx.ConnectTimeout("timed out", request=request)


@pytest.mark.parametrize("failure", [unavailable, timeout])
async def test_service_failure_fails_open(failure):
    checker = make_checker(failure)
    result = await checker.is_breached(PASSWORD)
    assert result.breached is False
    assert result.error is not None
    assert await checker.validate_not_breached(PASSWORD) is None


async def test_service_failure_can_fail_closed():
    checker = make_checker(lambda request: httpx.Response(500), fail_open=False)
    result = await checker.is_breached(PASSWORD)
    assert result.breached is True
    assert "try again later" in await checker.validate_not_breached(PASSWORD)


async def test_disabled_checker_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    checker = make_checker(handler, enabled=False)
    assert (await checker.is_breached(PASSWORD)).breached is False
