"""Per-agent output pattern tables used by the status detector.

Each agent CLI prints its own prompts, progress lines and banners. The
tables below are data; the detector walks them in precedence order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ntm.core.models import AgentErrorKind, AgentType

ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


def _ci(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class AgentPatterns:
    """Regex tables for one agent type.

    Attributes:
        rate_limit: Usage/rate limit banners (checked against the output tail)
        errors: (pattern, kind) pairs checked against the last few lines
        working: Active tool-use / streaming indicators on the last lines
        idle: Prompt patterns matched against the last non-empty line
    """

    rate_limit: tuple[re.Pattern[str], ...]
    errors: tuple[tuple[re.Pattern[str], AgentErrorKind], ...]
    working: tuple[re.Pattern[str], ...]
    idle: tuple[re.Pattern[str], ...]


_COMMON_ERRORS: tuple[tuple[re.Pattern[str], AgentErrorKind], ...] = (
    (re.compile(r"^\s*panic:", re.IGNORECASE | re.MULTILINE), AgentErrorKind.CRASH),
    (re.compile(r"Traceback \(most recent call last\)"), AgentErrorKind.CRASH),
    (re.compile(r"segmentation fault|core dumped|fatal error:", re.IGNORECASE), AgentErrorKind.CRASH),
    (re.compile(r"invalid api key|authentication (?:failed|error)|unauthorized|please run /login", re.IGNORECASE), AgentErrorKind.AUTH),
    (re.compile(r"connection refused|network error|ECONNRESET|ETIMEDOUT|getaddrinfo", re.IGNORECASE), AgentErrorKind.NETWORK),
    (re.compile(r"tool (?:use|call) (?:error|failed)|error calling tool|InputValidationError", re.IGNORECASE), AgentErrorKind.TOOL_ERROR),
    (re.compile(r"^\s*(?:error|fatal|exception):", re.IGNORECASE | re.MULTILINE), AgentErrorKind.UNKNOWN),
    (re.compile(r"API Error: \d{3}", re.IGNORECASE), AgentErrorKind.UNKNOWN),
)

CLAUDE_PATTERNS = AgentPatterns(
    rate_limit=_ci(
        r"you.ve hit your limit",
        r"rate limit exceeded",
        r"usage limit",
        r"too many requests",
        r"request limit",
        r"limit will reset",
    ),
    errors=_COMMON_ERRORS,
    working=_ci(
        r"esc to interrupt",
        r"^\s*[·✢✳✶✻✽*]\s+\w+…",
        r"\(\d+s\s*·",
        r"⎿\s+(?:Running|Reading|Writing|Searching)",
        r"^\s*(?:writing to|reading|searching|running|executing|installing|compiling|building|fetching) ",
    ),
    idle=_ci(
        r"^\s*>\s*$",
        r"^\s*>\s",
        r"Human:\s*$",
        r"waiting for input",
        r"\?\s+for shortcuts",
    ),
)

CODEX_PATTERNS = AgentPatterns(
    rate_limit=_ci(
        r"you.ve reached your usage limit",
        r"rate limit exceeded",
        r"rate limit",
        r"quota exceeded",
        r"capacity reached",
        r"too many requests",
    ),
    errors=_COMMON_ERRORS,
    working=_ci(
        r"esc to interrupt",
        r"^\s*(?:editing|creating|writing|reading|running|applying|patching|deleting) ",
        r"working \(\d+s",
    ),
    idle=_ci(
        r"^\s*›",
        r"\?\s*for\s*shortcuts",
        r"codex>\s*$",
        r"^\s*>\s*$",
        r"context left",
    ),
)

GEMINI_PATTERNS = AgentPatterns(
    rate_limit=_ci(
        r"quota exceeded",
        r"resource exhausted",
        r"rate limit",
        r"limit reached",
        r"(?:status|code)[: ]+429",
    ),
    errors=_COMMON_ERRORS,
    working=_ci(
        r"esc to cancel",
        r"^\s*(?:creating|writing|executing|running|generating|analyzing) ",
        r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]",
    ),
    idle=_ci(
        r"^\s*>\s*",
        r"gemini>\s*$",
        r"type your message",
    ),
)

GENERIC_PATTERNS = AgentPatterns(
    rate_limit=_ci(r"rate limit exceeded", r"too many requests", r"quota exceeded"),
    errors=_COMMON_ERRORS,
    working=_ci(r"esc to interrupt", r"esc to cancel"),
    idle=_ci(r"^\s*>\s*$"),
)

_BY_TYPE = {
    AgentType.CLAUDE: CLAUDE_PATTERNS,
    AgentType.CODEX: CODEX_PATTERNS,
    AgentType.GEMINI: GEMINI_PATTERNS,
}


def patterns_for(agent_type: AgentType) -> AgentPatterns:
    return _BY_TYPE.get(agent_type, GENERIC_PATTERNS)


# Context compaction banners, any agent.
COMPACTION_PATTERNS: tuple[re.Pattern[str], ...] = _ci(
    r"context left until auto-compact:\s*0%",
    r"compacting conversation",
    r"conversation (?:has been )?compacted",
    r"context (?:was )?compacted",
    r"auto-compacting",
    r"previous conversation (?:was )?summari[sz]ed",
)

# Codex prints explicit numbers.
CODEX_CONTEXT_LEFT_RE = re.compile(r"(\d+)%\s*context\s*left", re.IGNORECASE)
CODEX_TOKEN_USAGE_RE = re.compile(r"Token usage:\s*total=(\d[\d,]*)")

# Idle heuristics for a last line that matched nothing else.
IDLE_LINE_SUFFIXES = (">", "$", "%", ":", "❯", "→", "»", "#")
IDLE_LINE_WORDS = ("completed", "finished", "done", "ready", "success")
IDLE_SHORT_LINE_CHARS = 20


def has_compaction_marker(text: str) -> bool:
    return any(p.search(text) for p in COMPACTION_PATTERNS)
