"""
Breached-password lookup (Have I Been Pwned range API).

k-anonymity: only the first five hex characters of the password's SHA-1
leave the process; the suffix match happens locally.

This is a fallible external collaborator. A network failure or a bad
response never blocks the caller: it is logged and reported as
``BreachResult(breached=False, error=True)``.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..core.config import KeywardConfig

logger = logging.getLogger(__name__)


@dataclass
class BreachResult:
    breached: bool
    count: int = 0
    error: bool = False


class BreachChecker:
    """Queries the range API over httpx with a bounded timeout."""

    def __init__(self, config: KeywardConfig, client: Optional[httpx.Client] = None):
        self.base_url = config.breach_check_url
        self.timeout = config.breach_check_timeout
        self._client = client

    def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return self._client.get(url, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.get(url)

    def check(self, password: str) -> BreachResult:
        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]

        try:
            response = self._get(f"{self.base_url}{prefix}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Breach lookup failed: {type(e).__name__}")
            return BreachResult(breached=False, error=True)

        for line in response.text.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate.upper() == suffix:
                try:
                    return BreachResult(breached=True, count=int(count))
                except ValueError:
                    return BreachResult(breached=True)

        return BreachResult(breached=False)
