"""Probe collaborators: the actual holdings check.

The orchestrator treats the probe as a slow, failure-prone black box.
Any implementation of :class:`Probe` works; it must be safe to call
repeatedly and signal failure by raising.

Classes:
    Probe: Protocol consumed by the orchestrator.
    HttpProbe: ``aiohttp`` client for a JSON holdings endpoint, routed
        through the assigned identity's proxy.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Union
from urllib.parse import quote

import aiohttp

from verifier.exceptions import ProbeError
from verifier.identity_pool import Identity
from verifier.models import ResultCode, VerificationResult

logger = logging.getLogger(__name__)


class Probe(Protocol):
    async def check(
        self, subject: str, criterion: Optional[str], identity: Identity,
    ) -> Union[VerificationResult, Dict[str, Any]]:
        ...


class HttpProbe:
    """Query a JSON holdings endpoint through a proxy identity.

    The endpoint is built from ``url_template`` with ``{subject}`` and
    ``{criterion}`` placeholders (URL-quoted, empty criterion for
    "any").  A 200 response must carry a JSON object with at least a
    ``verified`` key; anything else raises :class:`ProbeError`.
    """

    def __init__(self, url_template: str, timeout_seconds: float = 15.0) -> None:
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    def build_url(self, subject: str, criterion: Optional[str]) -> str:
        return self.url_template.format(
            subject=quote(subject, safe=""),
            criterion=quote(criterion or "", safe=""),
        )

    async def check(
        self, subject: str, criterion: Optional[str], identity: Identity,
    ) -> VerificationResult:
        url = self.build_url(subject, criterion)
        logger.debug("Probing %s via %s", url, identity.masked_id)

        try:
            session = await self._get_session()
            async with session.get(url, proxy=identity.to_url()) as response:
                if response.status != 200:
                    raise ProbeError(f"HTTP {response.status} from holdings endpoint")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProbeError(f"Timed out after {self.timeout_seconds:.0f}s") from e
        except aiohttp.ClientError as e:
            raise ProbeError(f"Connection error: {e}") from e
        except ValueError as e:
            raise ProbeError(f"Malformed response body: {e}") from e

        if not isinstance(data, dict) or "verified" not in data:
            raise ProbeError("Unexpected response shape")
        try:
            result = VerificationResult.from_dict(data)
        except (KeyError, ValueError) as e:
            raise ProbeError(f"Unexpected response shape: {e}") from e
        if result.code is not ResultCode.OK:
            raise ProbeError(f"Endpoint reported {result.code.value}: {result.reason}")
        return result

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
