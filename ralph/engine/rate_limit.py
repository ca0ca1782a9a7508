"""Rate limit detection from agent output."""

import re
from dataclasses import dataclass
from typing import Optional

_RETRY_AFTER_S = re.compile(r"retry[- ]?after[:\s]+(\d+)\s*s", re.IGNORECASE)
_SECONDS = re.compile(r"(\d+)\s*seconds?", re.IGNORECASE)


@dataclass(frozen=True)
class RateLimitPattern:
    pattern: re.Pattern
    retry_after_pattern: Optional[re.Pattern] = None


def _p(pattern: str, retry_after: Optional[re.Pattern] = None) -> RateLimitPattern:
    return RateLimitPattern(re.compile(pattern, re.IGNORECASE), retry_after)


COMMON_PATTERNS = [
    # 429 in an HTTP/error context, not a bare line number.
    _p(r"(?:HTTP|status|error|code|response)[\s:]*429|429\s*(?:too many|rate limit|error)", _RETRY_AFTER_S),
    # Separator required so package names like @upstash/ratelimit do not match.
    _p(r"rate[- ]limit", _RETRY_AFTER_S),
    _p(r"too many requests", _SECONDS),
    _p(r"quota[- ]?exceeded", _SECONDS),
    _p(r"\boverloaded\b", _SECONDS),
]

AGENT_PATTERNS = {
    "claude": [
        _p(r"anthropic.*rate[- ]?limit", _RETRY_AFTER_S),
        _p(r"API rate limit exceeded", re.compile(r"wait[:\s]+(\d+)\s*s", re.IGNORECASE)),
        _p(r"claude.*is currently overloaded", _SECONDS),
        _p(r"api[- ]?error.*429", re.compile(r"retry[- ]?after[:\s]+(\d+)", re.IGNORECASE)),
    ],
    "codex": [
        _p(r"openai.*rate[- ]?limit", _RETRY_AFTER_S),
        _p(r"tokens per minute", _SECONDS),
        _p(r"requests per minute", _SECONDS),
        _p(r"azure.*throttl", _SECONDS),
    ],
}
AGENT_PATTERNS["opencode"] = AGENT_PATTERNS["codex"]

LOOSE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"throttl", r"limit.*exceeded", r"exceeded.*limit", r"capacity", r"backoff")
]

ANY_RETRY_AFTER_PATTERNS = [
    _RETRY_AFTER_S,
    re.compile(r"wait[:\s]+(\d+)\s*s", re.IGNORECASE),
    re.compile(r"try again in[:\s]+(\d+)\s*s", re.IGNORECASE),
    re.compile(r"(\d+)\s*seconds?(?:\s*(?:before|until|wait))", re.IGNORECASE),
]

# Exit codes that, together with a loose keyword match, indicate a rate limit.
RATE_LIMIT_EXIT_CODES = {1, 2, 429}

MAX_RETRY_AFTER_SEC = 3600


@dataclass(frozen=True)
class RateLimitVerdict:
    """Result of rate limit classification."""

    is_rate_limit: bool
    message: Optional[str] = None
    retry_after: Optional[int] = None


class RateLimitDetector:
    """Stateless classifier for rate limit errors.

    Only stderr is inspected. Agents routinely print code and prose containing
    "rate limit" or "429" on stdout, while real API errors go to stderr.
    """

    def detect(
        self,
        stderr: str,
        exit_code: Optional[int] = None,
        agent_id: Optional[str] = None,
    ) -> RateLimitVerdict:
        """Classify agent output.

        Args:
            stderr: Agent stderr
            exit_code: Process exit code, if it exited
            agent_id: Agent name, selects agent-specific patterns

        Returns:
            RateLimitVerdict
        """
        if not stderr.strip() and exit_code == 0:
            return RateLimitVerdict(is_rate_limit=False)

        for entry in self._patterns_for(agent_id):
            match = entry.pattern.search(stderr)
            if match:
                retry_after = None
                if entry.retry_after_pattern is not None:
                    retry_after = self._extract_retry_after(stderr, [entry.retry_after_pattern])
                return RateLimitVerdict(
                    is_rate_limit=True,
                    message=self._extract_message(stderr, match),
                    retry_after=retry_after,
                )

        if exit_code is not None and exit_code in RATE_LIMIT_EXIT_CODES:
            for pattern in LOOSE_PATTERNS:
                match = pattern.search(stderr)
                if match:
                    return RateLimitVerdict(
                        is_rate_limit=True,
                        message=self._extract_message(stderr, match),
                        retry_after=self._extract_retry_after(stderr, ANY_RETRY_AFTER_PATTERNS),
                    )

        return RateLimitVerdict(is_rate_limit=False)

    @staticmethod
    def _patterns_for(agent_id: Optional[str]) -> list[RateLimitPattern]:
        return COMMON_PATTERNS + AGENT_PATTERNS.get(agent_id or "", [])

    @staticmethod
    def _extract_message(output: str, match: re.Match) -> str:
        """Return whitespace-collapsed context around the match, at most 200 chars."""
        start = max(0, match.start() - 50)
        end = min(len(output), match.end() + 100)
        message = " ".join(output[start:end].split())
        if len(message) > 200:
            message = message[:200] + "..."
        return message

    @staticmethod
    def _extract_retry_after(output: str, patterns: list[re.Pattern]) -> Optional[int]:
        for pattern in patterns:
            match = pattern.search(output)
            if match:
                seconds = int(match.group(1))
                if 0 < seconds < MAX_RETRY_AFTER_SEC:
                    return seconds
        return None
