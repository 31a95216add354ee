"""User-agent and request header pools for identity rotation."""
from __future__ import annotations

import random
from typing import Dict, List, Optional


class UserAgentPool:
    """Pool of realistic browser identities used by the HTTP transport."""

    DESKTOP_USER_AGENTS: List[str] = [
        # Chrome on Windows
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
        # Chrome on macOS
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        # Chrome on Linux
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        # Firefox
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) Gecko/20100101 Firefox/124.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:124.0) Gecko/20100101 Firefox/124.0",
        # Safari
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
        # Edge
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    ]

    MOBILE_USER_AGENTS: List[str] = [
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (Linux; Android 13; SM-S901B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36",
        "Mozilla/5.0 (Linux; Android 14; moto g84 5G) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36",
    ]

    ACCEPT_LANGUAGES: List[str] = [
        "pt-BR,pt;q=0.9,en;q=0.8",
        "pt-BR,pt;q=0.9",
        "pt-BR,pt;q=0.8,en-US;q=0.6,en;q=0.4",
    ]

    def __init__(self, *, prefer_mobile: bool = False, rng: Optional[random.Random] = None) -> None:
        """Initialize user-agent pool.

        Parameters
        ----------
        prefer_mobile : bool
            If True, always pick mobile agents
        rng : random.Random, optional
            Random source (seeded in tests)
        """
        self.prefer_mobile = prefer_mobile
        self._rng = rng or random.Random()

    def get_random(self) -> str:
        """Get a random user-agent string (mobile ~20% of the time)."""
        if self.prefer_mobile or self._rng.random() < 0.2:
            return self._rng.choice(self.MOBILE_USER_AGENTS)
        return self._rng.choice(self.DESKTOP_USER_AGENTS)

    def build_headers(self) -> Dict[str, str]:
        """Build a fresh header set for a new identity."""
        return {
            "User-Agent": self.get_random(),
            "Accept": "application/json",
            "Accept-Language": self._rng.choice(self.ACCEPT_LANGUAGES),
            "Referer": "https://www.quintoandar.com.br/",
        }
