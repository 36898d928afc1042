from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

import aiohttp


class TransportError(Exception):
    """Raised when a request to the Zurg console fails.

    ``status`` carries the HTTP status for non-success responses and is None for
    network errors and timeouts.
    """

    def __init__(self, status: Optional[int], message: str, url: str = '') -> None:
        self.status = status
        self.message = message
        self.url = url
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.status is not None:
            return f'{self.message} (HTTP {self.status})'
        return self.message


def _is_retryable_status(status: Optional[int]) -> bool:
    return bool(status) and (500 <= status < 600 or status == 429)


def _backoff(retry_backoff: float, attempt: int) -> float:
    return retry_backoff * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))


async def make_request(
    session: aiohttp.ClientSession,
    url: str,
    *,
    method: str = 'get',
    request_timeout: float = 30,
    retry_attempts: int = 0,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
) -> str:
    """Issue a request and return the response body as text.

    Retries on 5xx/429 and network errors up to ``retry_attempts`` times with
    jittered exponential backoff; everything else raises TransportError at once.
    """
    attempts = 0
    while True:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(method, url, timeout=timeout) as response:
                if response.status < 200 or response.status >= 300:
                    reason = response.reason or 'request failed'
                    raise TransportError(response.status, f'{method.upper()} {url} failed: {reason}', url)
                body = await response.text()
                if debug_logging:
                    logging.debug(f'HTTP {method.upper()} {url} -> {response.status} ({len(body)} bytes)')
                return body
        except TransportError as e:
            if _is_retryable_status(e.status) and attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                logging.warning(f'HTTP {method.upper()} {url} {e.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            logging.error(f'HTTP {method.upper()} {url} error {e.status}: {e.message}')
            raise
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                logging.warning(f'HTTP {method.upper()} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            detail = str(e) or e.__class__.__name__
            logging.error(f'HTTP {method.upper()} {url} network/timeout: {detail}')
            raise TransportError(None, f'{method.upper()} {url} failed: {detail}', url) from e
