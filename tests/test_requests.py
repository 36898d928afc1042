import asyncio

import aiohttp
import pytest
from aioresponses import aioresponses

from integrations.services import TransportError, make_request


pytestmark = pytest.mark.asyncio


async def _call(url, method='get', retry_attempts=0):
    async with aiohttp.ClientSession() as session:
        return await make_request(
            session,
            url,
            method=method,
            retry_attempts=retry_attempts,
            retry_backoff=0,
        )


async def test_make_request_success_returns_body():
    url = "http://zurg.local/manage/"
    with aioresponses() as m:
        m.get(url, body="<html>ok</html>")
        resp = await _call(url)
        assert resp == "<html>ok</html>"


async def test_make_request_post_no_content():
    url = "http://zurg.local/manage/abc/files/1/delete"
    with aioresponses() as m:
        m.post(url, status=204)
        resp = await _call(url, method='post')
        assert resp == ""


async def test_make_request_non_success_raises_with_status():
    url = "http://zurg.local/manage/missing/"
    with aioresponses() as m:
        m.get(url, status=404)
        with pytest.raises(TransportError) as exc:
            await _call(url)
        assert exc.value.status == 404
        assert exc.value.url == url


async def test_make_request_server_error_not_retried_by_default():
    url = "http://zurg.local/manage/"
    with aioresponses() as m:
        m.get(url, status=500)
        m.get(url, body="late")
        with pytest.raises(TransportError) as exc:
            await _call(url)
        assert exc.value.status == 500


async def test_make_request_retries_then_success():
    url = "http://zurg.local/manage/retry/"
    with aioresponses() as m:
        m.get(url, status=503)
        m.get(url, body="ok")
        resp = await _call(url, retry_attempts=1)
        assert resp == "ok"


async def test_make_request_timeout_retries():
    url = "http://zurg.local/manage/timeout/"
    with aioresponses() as m:
        m.get(url, exception=asyncio.TimeoutError())
        m.get(url, body="ok")
        resp = await _call(url, retry_attempts=2)
        assert resp == "ok"


async def test_make_request_network_error_without_status():
    url = "http://zurg.local/manage/down/"
    with aioresponses() as m:
        m.get(url, exception=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(TransportError) as exc:
            await _call(url)
        assert exc.value.status is None
        assert "refused" in str(exc.value)
