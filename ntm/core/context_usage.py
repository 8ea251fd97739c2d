"""Context-window usage estimation from captured pane text.

The context-window and characters-per-token tables live in configuration
(ntm.config.schema.ContextTables); this module only applies them.
"""

from __future__ import annotations

from typing import Optional

from ntm.config.schema import ContextTables
from ntm.core.models import ContextUsage
from ntm.core.patterns import CODEX_CONTEXT_LEFT_RE, CODEX_TOKEN_USAGE_RE


class ContextEstimator:
    """Estimates token usage of a model's context window."""

    def __init__(self, tables: Optional[ContextTables] = None) -> None:
        self.tables = tables or ContextTables()
        # Longest keys first so "gpt-4o" wins over "gpt-4".
        self._window_keys = sorted(self.tables.context_windows, key=len, reverse=True)
        self._ratio_keys = sorted(self.tables.token_ratios, key=len, reverse=True)

    def context_limit(self, model: str) -> int:
        """Context window in tokens for `model`; 0 when the model is unknown."""
        name = model.strip().lower()
        if not name:
            return 0
        if name in self.tables.context_windows:
            return self.tables.context_windows[name]
        for key in self._window_keys:
            if name.startswith(key) or key in name:
                return self.tables.context_windows[key]
        return 0

    def token_ratio(self, model: str) -> float:
        name = model.strip().lower()
        for key in self._ratio_keys:
            if key in name:
                return self.tables.token_ratios[key]
        return self.tables.default_token_ratio

    def estimate_tokens(self, text: str, model: str) -> int:
        if not text:
            return 0
        return int(len(text) / self.token_ratio(model))

    def usage(self, text: str, model: str) -> ContextUsage:
        """Estimate context usage of `text` for `model`.

        An explicit Codex "NN% context left" line overrides the estimate.
        Percent is clamped to [0, 100]; unknown models report limit 0.
        """
        limit = self.context_limit(model)
        tokens = self.estimate_tokens(text, model)

        explicit = explicit_token_total(text)
        if explicit is not None:
            tokens = explicit

        percent = 0.0
        left = _last_match(CODEX_CONTEXT_LEFT_RE, text)
        if left is not None:
            percent = float(100 - min(100, int(left)))
            if limit:
                tokens = int(limit * percent / 100.0)
        elif limit:
            percent = tokens * 100.0 / limit

        percent = max(0.0, min(100.0, percent))
        if limit:
            tokens = min(tokens, limit)
        return ContextUsage(tokens_used=tokens, tokens_limit=limit, usage_percent=percent, model_name=model)


def explicit_token_total(text: str) -> Optional[int]:
    """Token total printed by Codex ("Token usage: total=219,582"), if any."""
    raw = _last_match(CODEX_TOKEN_USAGE_RE, text)
    if raw is None:
        return None
    return int(raw.replace(",", ""))


def _last_match(pattern, text: str) -> Optional[str]:  # type: ignore[no-untyped-def]
    last = None
    for match in pattern.finditer(text):
        last = match.group(1)
    return last
